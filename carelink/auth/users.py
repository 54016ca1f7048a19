"""Local user directory backing ``/auth/login`` and ``/auth/register``.

Accounts live in process memory. The seeded ``demo`` account accepts any
password so the dashboard can be explored without an identity provider;
registered accounts are checked against their bcrypt hash.
"""
from __future__ import annotations

import logging
import time
import uuid
from dataclasses import dataclass
from typing import Dict, Iterable, Optional

import bcrypt

from carelink.security.principal import Principal

logger = logging.getLogger(__name__)

DEMO_USERNAME = "demo"


@dataclass
class UserAccount:
    id: str
    username: str
    email: str
    name: str
    role: str
    fhir_patient_id: Optional[str]
    password_hash: Optional[bytes]
    scopes: frozenset = frozenset()

    def to_principal(self) -> Principal:
        return Principal(
            id=self.id,
            username=self.username,
            name=self.name,
            email=self.email,
            role=self.role,
            fhir_patient_id=self.fhir_patient_id,
            scopes=self.scopes,
        )


def hash_password(password: str) -> bytes:
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt())


def verify_password(password: str, password_hash: bytes) -> bool:
    return bcrypt.checkpw(password.encode("utf-8"), password_hash)


class UserDirectory:
    """Username/password accounts, seeded with the demo patient."""

    def __init__(self, seed_demo: bool = True) -> None:
        self._accounts: Dict[str, UserAccount] = {}
        if seed_demo:
            self._accounts[DEMO_USERNAME] = UserAccount(
                id="1",
                username=DEMO_USERNAME,
                email="demo@carelink.com",
                name="Demo User",
                role="patient",
                fhir_patient_id="example-patient-123",
                password_hash=None,
            )

    def get(self, username: str) -> Optional[UserAccount]:
        return self._accounts.get(username)

    def authenticate(self, username: str, password: str) -> Optional[Principal]:
        account = self._accounts.get(username)
        if account is None:
            return None

        if account.username == DEMO_USERNAME and account.password_hash is None:
            return account.to_principal()

        if not account.password_hash or not verify_password(password, account.password_hash):
            return None
        return account.to_principal()

    def register(
        self,
        *,
        username: str,
        email: str,
        password: str,
        name: str,
        role: str = "patient",
        fhir_patient_id: Optional[str] = None,
        scopes: Iterable[str] = (),
    ) -> UserAccount:
        if username in self._accounts:
            raise ValueError("Username is already taken")
        if any(account.email.lower() == email.lower() for account in self._accounts.values()):
            raise ValueError("Email is already registered")

        if fhir_patient_id is None and role == "patient":
            fhir_patient_id = f"patient-{int(time.time() * 1000)}"

        account = UserAccount(
            id=uuid.uuid4().hex,
            username=username,
            email=email,
            name=name,
            role=role,
            fhir_patient_id=fhir_patient_id,
            password_hash=hash_password(password),
            scopes=frozenset(scopes),
        )
        self._accounts[username] = account
        logger.info("Registered user %s with role %s", account.id, role)
        return account
