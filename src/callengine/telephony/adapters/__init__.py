"""Concrete call provider adapters."""

from callengine.telephony.adapters.callkaro import CallKaroProvider
from callengine.telephony.adapters.mock import MockCallProvider
from callengine.telephony.adapters.vapi import VapiProvider

__all__ = ["CallKaroProvider", "MockCallProvider", "VapiProvider"]
