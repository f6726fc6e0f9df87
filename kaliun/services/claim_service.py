"""Bind an installation to its owner, once."""

import logging
from dataclasses import dataclass
from typing import Optional

from sqlmodel import Session

from kaliun.errors import Conflict, NotFound, ValidationFailed
from kaliun.models.installation import Installation
from kaliun.services import store
from kaliun.utils.codes import is_claim_code, normalize_claim_code

logger = logging.getLogger(__name__)

OWNER_ROLE = "home_owner"


@dataclass
class CustomerInfo:
    name: str
    email: str
    address: Optional[str] = None


def _checked_code(raw: str) -> str:
    code = normalize_claim_code(raw or "")
    if not is_claim_code(code):
        raise ValidationFailed("Claim codes are 6 characters long")
    return code


def preview(session: Session, claim_code: str) -> Installation:
    """The installation a code would claim, or why it can't be claimed."""
    code = _checked_code(claim_code)
    installation = store.find_installation_by_claim_code(session, code)
    if not installation:
        raise NotFound("Invalid code")
    if installation.claimed_at is not None:
        raise Conflict("Already claimed", code="already_claimed")
    return installation


def claim(session: Session, claim_code: str, user_id: str, customer: CustomerInfo) -> Installation:
    """Claim an installation for `user_id`.

    The owner is set by one conditional UPDATE (owner still unset), so two
    concurrent claims produce exactly one winner; the loser gets Conflict.
    """
    code = _checked_code(claim_code)
    if not customer.name or not customer.email:
        raise ValidationFailed("Customer name and email are required")

    won = store.claim_installation(
        session,
        code,
        user_id,
        customer.name,
        customer.email,
        customer.address or "",
    )
    if not won:
        session.rollback()
        if store.find_installation_by_claim_code(session, code) is None:
            raise NotFound("Invalid code")
        logger.info("Claim rejected, already claimed: %s", code)
        raise Conflict("Already claimed", code="already_claimed")

    installation = store.find_installation_by_claim_code(session, code)
    store.add_installation_user(session, installation.id, user_id, OWNER_ROLE)
    session.commit()
    session.refresh(installation)

    logger.info("Claimed %s by user %s", installation.install_id, user_id)
    return installation
