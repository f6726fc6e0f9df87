"""Named store operations.

Everything that touches the tables goes through here, so the services only
depend on a handful of queries. The two check-and-set operations
(`claim_installation`, `delete_device_authorization`) are single statements;
their rowcount decides the winner.
"""

import logging
from typing import Any, Optional, Sequence

from sqlalchemy import delete, update
from sqlmodel import Session, col, select

from kaliun.models.device_auth import DeviceAuthorization
from kaliun.models.installation import (
    HealthReport,
    Installation,
    InstallationLog,
    InstallationUser,
)
from kaliun.models.user import LocalSession, User
from kaliun.utils.clock import utcnow

logger = logging.getLogger(__name__)


# --- Installations ---

def find_installation(session: Session, install_id: str) -> Optional[Installation]:
    return session.exec(select(Installation).where(Installation.install_id == install_id)).first()


def find_installation_by_claim_code(session: Session, claim_code: str) -> Optional[Installation]:
    return session.exec(select(Installation).where(Installation.claim_code == claim_code)).first()


def find_installations_for_user(session: Session, user_id: str) -> Sequence[Installation]:
    return session.exec(
        select(Installation)
        .where(Installation.claimed_by == user_id)
        .order_by(col(Installation.created_at).desc())
    ).all()


def insert_installation(session: Session, installation: Installation) -> Installation:
    """Insert and commit. Raises IntegrityError on a duplicate install_id or claim_code."""
    session.add(installation)
    session.commit()
    session.refresh(installation)
    return installation


def update_installation(session: Session, installation: Installation, **fields: Any) -> Installation:
    for key, value in fields.items():
        setattr(installation, key, value)
    installation.updated_at = utcnow()
    session.add(installation)
    session.commit()
    session.refresh(installation)
    return installation


def claim_installation(
    session: Session,
    claim_code: str,
    user_id: str,
    customer_name: str,
    customer_email: str,
    customer_address: str,
) -> bool:
    """Set the owner only while it is still unset. Does not commit.

    Returns True for exactly one caller per claim code.
    """
    now = utcnow()
    result = session.exec(
        update(Installation)
        .where(Installation.claim_code == claim_code)
        .where(col(Installation.claimed_at).is_(None))
        .values(
            claimed_by=user_id,
            claimed_at=now,
            customer_name=customer_name,
            customer_email=customer_email,
            customer_address=customer_address,
            updated_at=now,
        )
    )
    return result.rowcount == 1


def add_installation_user(session: Session, installation_id: str, user_id: str, role: str) -> None:
    session.add(InstallationUser(installation_id=installation_id, user_id=user_id, role=role))


def insert_health_report(session: Session, installation_id: str, data: dict[str, Any]) -> None:
    session.add(HealthReport(installation_id=installation_id, data=data))


def insert_logs(session: Session, entries: list[InstallationLog]) -> None:
    session.add_all(entries)


def recent_logs(session: Session, installation_id: str, limit: int = 50) -> Sequence[InstallationLog]:
    return session.exec(
        select(InstallationLog)
        .where(InstallationLog.installation_id == installation_id)
        .order_by(col(InstallationLog.timestamp).desc())
        .limit(limit)
    ).all()


# --- Device authorizations ---

def find_device_authorization(session: Session, device_code: str) -> Optional[DeviceAuthorization]:
    return session.exec(
        select(DeviceAuthorization).where(DeviceAuthorization.device_code == device_code)
    ).first()


def find_device_authorization_by_user_code(session: Session, user_code: str) -> Optional[DeviceAuthorization]:
    return session.exec(
        select(DeviceAuthorization).where(DeviceAuthorization.user_code == user_code)
    ).first()


def insert_device_authorization(session: Session, record: DeviceAuthorization) -> DeviceAuthorization:
    session.add(record)
    session.commit()
    session.refresh(record)
    return record


def authorize_device_authorization(session: Session, record_id: str, user_id: str) -> bool:
    """Bind the user only while the request is still pending. Commits."""
    result = session.exec(
        update(DeviceAuthorization)
        .where(DeviceAuthorization.id == record_id)
        .where(col(DeviceAuthorization.authorized).is_(False))
        .where(col(DeviceAuthorization.denied).is_(False))
        .values(authorized=True, user_id=user_id, authorized_at=utcnow())
    )
    session.commit()
    return result.rowcount == 1


def deny_device_authorization(session: Session, record_id: str) -> bool:
    result = session.exec(
        update(DeviceAuthorization)
        .where(DeviceAuthorization.id == record_id)
        .where(col(DeviceAuthorization.authorized).is_(False))
        .values(denied=True)
    )
    session.commit()
    return result.rowcount == 1


def delete_device_authorization(session: Session, record_id: str) -> bool:
    """Delete and commit. Returns True only for the caller that removed the row."""
    result = session.exec(delete(DeviceAuthorization).where(DeviceAuthorization.id == record_id))
    session.commit()
    return result.rowcount == 1


# --- Users ---

def find_user(session: Session, user_id: str) -> Optional[User]:
    return session.get(User, user_id)


def find_user_by_email(session: Session, email: str) -> Optional[User]:
    return session.exec(select(User).where(User.email == email.lower())).first()


def find_user_by_provider_id(session: Session, provider_id: str) -> Optional[User]:
    return session.exec(select(User).where(User.provider_id == provider_id)).first()


def insert_user(session: Session, user: User) -> User:
    user.email = user.email.lower()
    session.add(user)
    session.commit()
    session.refresh(user)
    return user


def update_user(session: Session, user: User, **fields: Any) -> User:
    for key, value in fields.items():
        setattr(user, key, value)
    user.updated_at = utcnow()
    session.add(user)
    session.commit()
    session.refresh(user)
    return user


# --- Local sessions ---

def insert_local_session(session: Session, record: LocalSession) -> LocalSession:
    session.add(record)
    session.commit()
    session.refresh(record)
    return record


def find_local_session(session: Session, token: str) -> Optional[LocalSession]:
    """Only sessions that have not expired yet."""
    return session.exec(
        select(LocalSession)
        .where(LocalSession.token == token)
        .where(LocalSession.expires_at > utcnow())
    ).first()


def delete_local_session(session: Session, token: str) -> None:
    session.exec(delete(LocalSession).where(LocalSession.token == token))
    session.commit()


def delete_expired_local_sessions(session: Session) -> int:
    result = session.exec(delete(LocalSession).where(LocalSession.expires_at < utcnow()))
    session.commit()
    if result.rowcount:
        logger.info("Purged %d expired sessions", result.rowcount)
    return result.rowcount
