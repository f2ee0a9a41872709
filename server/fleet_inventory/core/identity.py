"""Canonical device identities derived from the naming schemes of each source.

Sources disagree on how they spell the same machine:

* PVS and the Broker report ``DOMAIN\\NAME``
* Active Directory and DNS hand out ``name.corp.example.com``
* vSphere display names carry clone suffixes such as ``VDI001_clone``

``normalize_identity`` folds all of them into an upper-cased short name plus the
first label of the domain, if one is known.
"""

from typing import Optional

from .models import DeviceIdentity


def _first_label(domain: Optional[str]) -> Optional[str]:
    if domain is None:
        return None
    label = domain.strip().split(".", 1)[0].strip()
    return label.upper() or None


def normalize_identity(
    raw_name: Optional[str],
    domain: Optional[str] = None,
    split_char: Optional[str] = None,
) -> DeviceIdentity:
    """Return the canonical identity for ``raw_name``.

    Never raises: names that cannot be parsed fall back to the whole string as
    the short name.
    """

    name = (raw_name or "").strip()

    if split_char:
        prefix = name.split(split_char, 1)[0].strip()
        if prefix:
            name = prefix

    implied_domain: Optional[str] = None
    if "\\" in name:
        head, _, tail = name.rpartition("\\")
        if tail.strip():
            implied_domain = head.split("\\")[0]
            name = tail
    elif "." in name:
        head, _, tail = name.partition(".")
        if head.strip():
            implied_domain = tail
            name = head

    resolved_domain = _first_label(domain) if domain and domain.strip() else _first_label(implied_domain)

    return DeviceIdentity(short_name=name.strip().upper(), domain=resolved_domain)
