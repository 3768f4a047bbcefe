"""Signed credential issuance used for identity rotation."""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric.ed25519 import (
    Ed25519PrivateKey,
    Ed25519PublicKey,
)
from cryptography.hazmat.primitives.kdf.hkdf import HKDF
from cryptography.hazmat.primitives.serialization import Encoding, PublicFormat

from .state import Identity

logger = logging.getLogger(__name__)


class CredentialVerificationError(RuntimeError):
    """Raised when a credential signature does not validate."""


@dataclass(frozen=True)
class RevocationProof:
    """Signed statement that a credential was withdrawn."""

    credential_id: str
    subject: str
    revoked_at: datetime
    proof: bytes

    def as_dict(self) -> dict[str, str]:
        return {
            "credential_id": self.credential_id,
            "subject": self.subject,
            "revoked_at": self.revoked_at.isoformat(),
            "proof": self.proof.hex(),
        }


class IdentityIssuer:
    """Issues Ed25519-signed credentials that chain to their predecessor."""

    def __init__(self, private_key: Optional[Ed25519PrivateKey] = None) -> None:
        self._private_key = private_key or Ed25519PrivateKey.generate()
        self._public_key: Ed25519PublicKey = self._private_key.public_key()

    @property
    def public_key_bytes(self) -> bytes:
        return self._public_key.public_bytes(Encoding.Raw, PublicFormat.Raw)

    def issue(
        self,
        subject: str,
        *,
        issued_at: datetime,
        expires_at: datetime,
        parent: Optional[Identity] = None,
    ) -> Identity:
        if expires_at <= issued_at:
            raise ValueError("credential expiry must follow its issuance")
        credential_id = os.urandom(16).hex()
        nonce = os.urandom(16).hex()
        parent_signature = parent.signature if parent is not None else None
        unsigned = Identity(
            subject=subject,
            credential_id=credential_id,
            issued_at=issued_at,
            expires_at=expires_at,
            nonce=nonce,
            parent_signature=parent_signature,
        )
        signature = self._private_key.sign(self._credential_payload(unsigned))
        return Identity(
            subject=subject,
            credential_id=credential_id,
            issued_at=issued_at,
            expires_at=expires_at,
            nonce=nonce,
            signature=signature.hex(),
            parent_signature=parent_signature,
        )

    def verify(self, identity: Identity) -> None:
        try:
            signature = bytes.fromhex(identity.signature)
            self._public_key.verify(signature, self._credential_payload(identity))
        except (InvalidSignature, ValueError) as exc:
            logger.warning("Rejected credential %s for %s", identity.credential_id, identity.subject)
            raise CredentialVerificationError(
                f"credential {identity.credential_id} for {identity.subject} failed verification"
            ) from exc

    def revoke(self, identity: Identity, *, revoked_at: Optional[datetime] = None) -> RevocationProof:
        revoked_at = revoked_at or datetime.now(tz=timezone.utc)
        logger.info("Revoking credential %s for %s", identity.credential_id, identity.subject)
        payload = b"|".join(
            [
                b"PHASESHIFT-REVOKE",
                identity.credential_id.encode("ascii"),
                identity.signature.encode("ascii"),
                revoked_at.isoformat().encode("ascii"),
            ]
        )
        return RevocationProof(
            credential_id=identity.credential_id,
            subject=identity.subject,
            revoked_at=revoked_at,
            proof=self._private_key.sign(payload),
        )

    def session_key(self, identity: Identity, *, salt: Optional[bytes] = None) -> bytes:
        """Derive a 32-byte session key bound to ``identity``."""

        hkdf = HKDF(
            algorithm=hashes.SHA256(),
            length=32,
            salt=salt,
            info=b"PHASESHIFT-SESSION|" + identity.subject.encode("utf-8"),
        )
        return hkdf.derive(bytes.fromhex(identity.signature))

    @staticmethod
    def _credential_payload(identity: Identity) -> bytes:
        return b"|".join(
            [
                b"PHASESHIFT-CREDENTIAL",
                identity.subject.encode("utf-8"),
                identity.credential_id.encode("ascii"),
                identity.issued_at.isoformat().encode("ascii"),
                identity.expires_at.isoformat().encode("ascii"),
                identity.nonce.encode("ascii"),
                (identity.parent_signature or "").encode("ascii"),
            ]
        )


__all__ = [
    "CredentialVerificationError",
    "IdentityIssuer",
    "RevocationProof",
]
