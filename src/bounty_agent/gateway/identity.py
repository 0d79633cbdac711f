"""Signed identity envelopes attached to paid marketplace writes."""

from __future__ import annotations

import base64
import binascii
import json
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Mapping

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ed25519, padding, rsa

IDENTITY_VERSION = 1
MESSAGE_PREFIX = "agent-action-v1"
MAX_PROOF_AGE_SECONDS = 600

HEADER_ACTION_ID = "x-agent-action-id"
HEADER_IDENTITY = "x-agent-identity-v1"
HEADER_SIGNATURE = "x-agent-signature"


class IdentityProofError(Exception):
    """Identity envelope could not be produced or verified."""


@dataclass(frozen=True)
class ActionEnvelope:
    version: int
    action_id: str
    agent_id: str
    target_id: str
    bid_amount_cents: int
    issued_at: str

    @classmethod
    def new(cls, *, agent_id: str, target_id: str, bid_amount_cents: int) -> ActionEnvelope:
        return cls(
            version=IDENTITY_VERSION,
            action_id=str(uuid.uuid4()),
            agent_id=agent_id,
            target_id=target_id,
            bid_amount_cents=int(bid_amount_cents),
            issued_at=datetime.now(timezone.utc).isoformat(),
        )

    def message(self) -> str:
        return "\n".join(
            [
                MESSAGE_PREFIX,
                f"actionId:{self.action_id}",
                f"agentId:{self.agent_id}",
                f"targetId:{self.target_id}",
                f"bidAmountCents:{self.bid_amount_cents}",
                f"issuedAt:{self.issued_at}",
            ]
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "version": self.version,
            "actionId": self.action_id,
            "agentId": self.agent_id,
            "targetId": self.target_id,
            "bidAmountCents": self.bid_amount_cents,
            "issuedAt": self.issued_at,
        }

    def encode(self) -> str:
        raw = json.dumps(self.to_dict(), separators=(",", ":")).encode("utf-8")
        return base64.b64encode(raw).decode("ascii")

    @classmethod
    def decode(cls, value: str) -> ActionEnvelope:
        try:
            data = json.loads(base64.b64decode(value.encode("ascii"), validate=True))
        except (ValueError, json.JSONDecodeError) as exc:
            raise IdentityProofError(f"Malformed identity envelope: {exc}") from exc
        if not isinstance(data, dict):
            raise IdentityProofError("Identity envelope must be an object")
        try:
            return cls(
                version=int(data["version"]),
                action_id=str(data["actionId"]),
                agent_id=str(data["agentId"]),
                target_id=str(data["targetId"]),
                bid_amount_cents=int(data["bidAmountCents"]),
                issued_at=str(data["issuedAt"]),
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise IdentityProofError(f"Incomplete identity envelope: {exc}") from exc


class IdentitySigner:
    """Signs envelopes with an Ed25519 or RSA (PSS, SHA-256) PEM private key."""

    def __init__(self, private_key: ed25519.Ed25519PrivateKey | rsa.RSAPrivateKey) -> None:
        self._private_key = private_key

    @classmethod
    def from_pem_file(cls, path: str | Path) -> IdentitySigner:
        key_path = Path(path)
        if not key_path.exists():
            raise IdentityProofError(f"Private key file not found: {key_path}")
        return cls.from_pem(key_path.read_bytes())

    @classmethod
    def from_pem(cls, data: bytes) -> IdentitySigner:
        try:
            key = serialization.load_pem_private_key(data, password=None)
        except (ValueError, TypeError) as exc:
            raise IdentityProofError(f"Failed to load private key: {exc}") from exc
        if not isinstance(key, (ed25519.Ed25519PrivateKey, rsa.RSAPrivateKey)):
            raise IdentityProofError("Private key must be Ed25519 or RSA")
        return cls(key)

    @classmethod
    def generate(cls) -> IdentitySigner:
        return cls(ed25519.Ed25519PrivateKey.generate())

    def public_key_pem(self) -> str:
        return (
            self._private_key.public_key()
            .public_bytes(
                encoding=serialization.Encoding.PEM,
                format=serialization.PublicFormat.SubjectPublicKeyInfo,
            )
            .decode("ascii")
        )

    def sign(self, message: str) -> str:
        payload = message.encode("utf-8")
        if isinstance(self._private_key, rsa.RSAPrivateKey):
            signature = self._private_key.sign(
                payload,
                padding.PSS(mgf=padding.MGF1(hashes.SHA256()), salt_length=padding.PSS.DIGEST_LENGTH),
                hashes.SHA256(),
            )
        else:
            signature = self._private_key.sign(payload)
        return base64.b64encode(signature).decode("ascii")

    def headers_for(self, envelope: ActionEnvelope) -> dict[str, str]:
        return {
            HEADER_ACTION_ID: envelope.action_id,
            HEADER_IDENTITY: envelope.encode(),
            HEADER_SIGNATURE: self.sign(envelope.message()),
        }


def verify_identity_headers(
    headers: Mapping[str, str],
    public_key_pem: str | bytes,
    *,
    max_age_seconds: float = MAX_PROOF_AGE_SECONDS,
    now: datetime | None = None,
) -> ActionEnvelope:
    """Check a signed envelope the way the marketplace does."""
    lowered = {key.lower(): value for key, value in headers.items()}
    encoded = lowered.get(HEADER_IDENTITY)
    signature = lowered.get(HEADER_SIGNATURE)
    if not encoded or not signature:
        raise IdentityProofError("Missing identity headers")

    envelope = ActionEnvelope.decode(encoded)
    if envelope.version != IDENTITY_VERSION:
        raise IdentityProofError(f"Unsupported identity version {envelope.version}")
    action_id = lowered.get(HEADER_ACTION_ID)
    if action_id and action_id != envelope.action_id:
        raise IdentityProofError("Action id header does not match envelope")

    try:
        issued = datetime.fromisoformat(envelope.issued_at)
    except ValueError as exc:
        raise IdentityProofError("Invalid issuedAt") from exc
    if issued.tzinfo is None:
        issued = issued.replace(tzinfo=timezone.utc)
    age = ((now or datetime.now(timezone.utc)) - issued).total_seconds()
    if age > max_age_seconds or age < -max_age_seconds:
        raise IdentityProofError("Identity proof expired")

    pem = public_key_pem.encode("ascii") if isinstance(public_key_pem, str) else public_key_pem
    public_key = serialization.load_pem_public_key(pem)
    try:
        raw_signature = base64.b64decode(signature, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise IdentityProofError("Signature is not valid base64") from exc
    message = envelope.message().encode("utf-8")
    try:
        if isinstance(public_key, rsa.RSAPublicKey):
            public_key.verify(
                raw_signature,
                message,
                padding.PSS(mgf=padding.MGF1(hashes.SHA256()), salt_length=padding.PSS.DIGEST_LENGTH),
                hashes.SHA256(),
            )
        elif isinstance(public_key, ed25519.Ed25519PublicKey):
            public_key.verify(raw_signature, message)
        else:
            raise IdentityProofError("Unsupported public key type")
    except InvalidSignature as exc:
        raise IdentityProofError("Invalid signature") from exc
    return envelope
