"""Map free-text organization names to durable company rows."""
from __future__ import annotations

import logging

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from biosignal.models import Company
from biosignal.normalizer import display_name, strip_legal_suffixes

log = logging.getLogger(__name__)


def identity_key(raw_name: str | None) -> str:
    return strip_legal_suffixes(display_name(raw_name))


def find_company(session: Session, raw_name: str | None) -> Company | None:
    key = identity_key(raw_name)
    if not key:
        return None
    return session.execute(select(Company).where(Company.name_key == key)).scalars().first()


def resolve(session: Session, raw_name: str | None, *, industry: str | None = None) -> Company | None:
    """Return the company for *raw_name*, creating it on first sight.

    Returns ``None`` when the name is empty or normalizes to nothing; callers
    skip the event in that case. A concurrent insert of the same new name is
    absorbed by re-reading the row the other writer committed.
    """
    name = display_name(raw_name)
    key = strip_legal_suffixes(name)
    if not name or not key:
        return None

    company = session.execute(select(Company).where(Company.name_key == key)).scalars().first()
    if company is not None:
        return company

    company = Company(name=name, name_key=key)
    if industry:
        company.industry = industry
    session.add(company)
    try:
        session.commit()
    except IntegrityError:
        session.rollback()
        existing = session.execute(select(Company).where(Company.name_key == key)).scalars().first()
        if existing is None:
            raise
        log.debug("Resolved %r after concurrent insert", name)
        return existing
    log.info("New company: %s", name)
    return company
