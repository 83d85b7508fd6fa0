from __future__ import annotations

from .models import RemoteContactPerson, RemoteCustomer


def _clean(value: str | None) -> str | None:
    if value is None:
        return None
    stripped = value.strip()
    return stripped or None


def _primary_person(persons: tuple[RemoteContactPerson, ...]) -> RemoteContactPerson | None:
    for person in persons:
        if person.is_primary_contact:
            return person
    return None


def resolve_phone(customer: RemoteCustomer) -> str | None:
    """Pick the authoritative phone number for a customer.

    Organization-level numbers outrank contact-person numbers: record mobile, record phone,
    primary person mobile, primary person phone, first person mobile, first person phone.
    """
    candidates: list[str | None] = [customer.mobile, customer.phone]
    primary = _primary_person(customer.contact_persons)
    if primary is not None:
        candidates.extend([primary.mobile, primary.phone])
    if customer.contact_persons:
        first = customer.contact_persons[0]
        candidates.extend([first.mobile, first.phone])
    for candidate in candidates:
        cleaned = _clean(candidate)
        if cleaned is not None:
            return cleaned
    return None


def resolve_email(customer: RemoteCustomer) -> str | None:
    candidates: list[str | None] = [customer.email]
    primary = _primary_person(customer.contact_persons)
    if primary is not None:
        candidates.append(primary.email)
    if customer.contact_persons:
        candidates.append(customer.contact_persons[0].email)
    for candidate in candidates:
        cleaned = _clean(candidate)
        if cleaned is not None:
            return cleaned
    return None


def primary_contact_person_id(customer: RemoteCustomer) -> str | None:
    primary = _primary_person(customer.contact_persons)
    if primary is not None:
        return primary.contact_person_id
    if customer.contact_persons:
        return customer.contact_persons[0].contact_person_id
    return None


def to_e164(phone: str) -> str:
    """Strip formatting from a stored number, keeping digits and a leading plus."""
    sanitized = "".join(ch for ch in phone.strip() if ch.isdigit() or ch == "+")
    if not sanitized:
        return ""
    digits = sanitized.replace("+", "")
    return f"+{digits}"


def is_valid_e164(phone: str) -> bool:
    if not phone.startswith("+"):
        return False
    digits = phone[1:]
    return digits.isdigit() and 7 <= len(digits) <= 15


def mask_phone(phone: str | None) -> str:
    if not phone:
        return "***"
    digits = "".join(ch for ch in phone if ch.isdigit())
    if len(digits) >= 4:
        return f"***{digits[-4:]}"
    return "*" * len(phone.strip() or "***")
