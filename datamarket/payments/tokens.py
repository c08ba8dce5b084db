"""Datamarket signed tokens.

Payment requests and receipts travel as compact JWT-shaped credentials:
base64url(header) . base64url(payload) . base64url(signature), where the
signature is an EIP-191 personal signature over "header.payload" made with
an eth-account key. The signer's address is the `iss` claim, so anyone can
verify a token without a shared secret.

Example:
    from eth_account import Account
    from datamarket.payments.tokens import encode_token, verify_token

    account = Account.create()
    token = encode_token({"iss": account.address, "amount": 800}, account)
    payload = verify_token(token)
"""

from __future__ import annotations

import base64
import binascii
import json
import re
from typing import Optional

from eth_account import Account
from eth_account.messages import encode_defunct
from eth_account.signers.local import LocalAccount


HEADER = {"alg": "ES256K-R", "typ": "JWT"}

# Three dot-separated base64url segments starting with an encoded JSON object
TOKEN_PATTERN = re.compile(r"eyJ[A-Za-z0-9_-]+\.[A-Za-z0-9_-]+\.[A-Za-z0-9_-]+")


class TokenError(ValueError):
    """Malformed token or bad signature."""


def _b64encode(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def _b64decode(segment: str) -> bytes:
    padding = "=" * (-len(segment) % 4)
    return base64.urlsafe_b64decode(segment + padding)


def _json_segment(data: dict) -> str:
    return _b64encode(json.dumps(data, separators=(",", ":"), sort_keys=True, default=str).encode())


def encode_token(payload: dict, account: LocalAccount) -> str:
    """Sign a payload as a compact token.

    The `iss` claim is set to the signing account's address.
    """
    payload = {**payload, "iss": account.address}
    signing_input = f"{_json_segment(HEADER)}.{_json_segment(payload)}"
    signed = account.sign_message(encode_defunct(text=signing_input))
    return f"{signing_input}.{_b64encode(bytes(signed.signature))}"


def _split(token: str) -> tuple[str, str, str]:
    parts = token.strip().split(".")
    if len(parts) != 3:
        raise TokenError("Token must have three segments")
    return parts[0], parts[1], parts[2]


def decode_payload(token: str) -> Optional[dict]:
    """Decode a token payload without verifying it. None if undecodable."""
    try:
        _, body, _ = _split(token)
        payload = json.loads(_b64decode(body))
    except (TokenError, ValueError, binascii.Error):
        return None
    return payload if isinstance(payload, dict) else None


def verify_token(token: str, expected_issuer: Optional[str] = None) -> dict:
    """Verify a token's signature and return its payload.

    Args:
        token: Compact token
        expected_issuer: Optional address the token must be signed by

    Raises:
        TokenError: If the token is malformed or the signature does not match
    """
    header, body, signature = _split(token)
    payload = decode_payload(token)
    if payload is None:
        raise TokenError("Token payload is not valid JSON")

    try:
        signer = Account.recover_message(
            encode_defunct(text=f"{header}.{body}"),
            signature=_b64decode(signature),
        )
    except Exception as e:
        raise TokenError(f"Bad token signature: {e}") from e

    issuer = str(payload.get("iss", ""))
    if signer.lower() != issuer.lower():
        raise TokenError("Token signature does not match issuer")
    if expected_issuer and signer.lower() != expected_issuer.lower():
        raise TokenError(f"Token issued by {signer}, expected {expected_issuer}")
    return payload


def find_tokens(text: str) -> list[str]:
    """Token-shaped substrings of a free-text message."""
    return TOKEN_PATTERN.findall(text or "")


def receipt_payment_token(receipt: str) -> Optional[str]:
    """Extract the payment token embedded in a receipt credential."""
    payload = decode_payload(receipt)
    if not payload:
        return None
    vc = payload.get("vc")
    subject = vc.get("credentialSubject") if isinstance(vc, dict) else None
    token = subject.get("paymentToken") if isinstance(subject, dict) else None
    return token if isinstance(token, str) and token else None
