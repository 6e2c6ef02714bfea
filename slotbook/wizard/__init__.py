"""
Client-side booking wizard.

BookingWizard drives the flow; BookingBackend is what it needs from the
server; ApiClient implements it over HTTP.
"""

from .backend import BookingBackend, BookingReceipt, HoldInfo, SlotOption
from .state_machine import (
    AvailabilityStatus,
    BookingWizard,
    InvalidTransitionError,
    WizardStep,
)
from .api import ApiClient

__all__ = [
    "ApiClient",
    "AvailabilityStatus",
    "BookingBackend",
    "BookingReceipt",
    "BookingWizard",
    "HoldInfo",
    "InvalidTransitionError",
    "SlotOption",
    "WizardStep",
]
