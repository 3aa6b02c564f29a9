"""
Services Module

Collaborators behind narrow interfaces: address resolution and notifications.
"""
from .geocoding import (
    AddressResolver,
    GoogleGeocoder,
    NullAddressResolver,
    ResolvedAddress,
    create_address_resolver,
)
from .notifications import EmailNotifier, LogNotifier, Notifier, create_notifier

__all__ = [
    "AddressResolver",
    "GoogleGeocoder",
    "NullAddressResolver",
    "ResolvedAddress",
    "create_address_resolver",
    "EmailNotifier",
    "LogNotifier",
    "Notifier",
    "create_notifier",
]
