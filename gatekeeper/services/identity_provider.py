"""Client for the external identity provider that verifies sessions."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional, Protocol

import httpx

from gatekeeper.core.config import AppSettings


class IdentityProviderError(RuntimeError):
    """Raised when the identity provider cannot answer a verification request."""


@dataclass(frozen=True)
class SessionCredentials:
    token: str
    source: str = "header"


@dataclass(frozen=True)
class VerifiedIdentity:
    session_id: Optional[str]
    user_id: Optional[str]
    email: Optional[str] = None


class IdentityProvider(Protocol):
    def get_verified_identity(self, credentials: Optional[SessionCredentials]) -> Optional[VerifiedIdentity]:
        ...

    def fetch_primary_email(self, user_id: str) -> Optional[str]:
        ...

    def close(self) -> None:
        ...


def extract_claim_email(claims: Dict[str, Any]) -> Optional[str]:
    """Pick the email out of session claims.

    Providers disagree on the claim name, so ``email``, ``email_address`` and the
    first entry of ``email_addresses`` are tried in that order.
    """

    for key in ("email", "email_address"):
        value = claims.get(key)
        if isinstance(value, str) and value.strip():
            return value
    addresses = claims.get("email_addresses")
    if isinstance(addresses, list) and addresses:
        first = addresses[0]
        if isinstance(first, str) and first.strip():
            return first
        if isinstance(first, dict):
            value = first.get("email_address") or first.get("email")
            if isinstance(value, str) and value.strip():
                return value
    return None


class HttpIdentityProvider(IdentityProvider):
    """Verifies session tokens against the provider's REST API."""

    _REJECTED_STATUSES = frozenset({401, 403, 404})

    def __init__(
        self,
        *,
        base_url: str,
        secret_key: Optional[str],
        timeout: float = 5.0,
        transport: Optional[httpx.BaseTransport] = None,
    ) -> None:
        headers = {"Accept": "application/json"}
        if secret_key:
            headers["Authorization"] = f"Bearer {secret_key}"
        self._client = httpx.Client(
            base_url=base_url.rstrip("/"),
            headers=headers,
            timeout=timeout,
            transport=transport,
        )
        self._logger = logging.getLogger("gatekeeper.services.identity_provider")

    def get_verified_identity(self, credentials: Optional[SessionCredentials]) -> Optional[VerifiedIdentity]:
        if credentials is None or not credentials.token:
            return None

        payload = self._request("POST", "/sessions/verify", json={"token": credentials.token})
        if payload is None:
            return None

        claims = payload.get("claims") if isinstance(payload.get("claims"), dict) else payload
        session_id = payload.get("session_id") or claims.get("sid")
        user_id = payload.get("user_id") or claims.get("sub")
        if not session_id and not user_id:
            return None
        return VerifiedIdentity(
            session_id=str(session_id) if session_id else None,
            user_id=str(user_id) if user_id else None,
            email=extract_claim_email(claims),
        )

    def fetch_primary_email(self, user_id: str) -> Optional[str]:
        payload = self._request("GET", f"/users/{user_id}")
        if payload is None:
            return None

        addresses = payload.get("email_addresses") or []
        if not isinstance(addresses, list):
            raise IdentityProviderError("Identity provider returned a malformed user profile")
        candidates = [address for address in addresses if isinstance(address, dict)]
        primary_id = payload.get("primary_email_address_id")
        for address in candidates:
            if address.get("id") == primary_id and isinstance(address.get("email_address"), str):
                return address["email_address"]
        for address in candidates:
            if isinstance(address.get("email_address"), str):
                return address["email_address"]
        return extract_claim_email(payload)

    def close(self) -> None:
        self._client.close()

    def _request(self, method: str, url: str, **kwargs: Any) -> Optional[Dict[str, Any]]:
        try:
            response = self._client.request(method, url, **kwargs)
        except httpx.HTTPError as exc:
            raise IdentityProviderError(f"Identity provider request failed: {exc}") from exc

        if response.status_code in self._REJECTED_STATUSES:
            self._logger.debug("identity_provider_rejected", extra={"status_code": response.status_code})
            return None
        if response.is_error:
            raise IdentityProviderError(f"Identity provider returned {response.status_code}")
        try:
            payload = response.json()
        except ValueError as exc:
            raise IdentityProviderError("Identity provider returned a non-JSON body") from exc
        if not isinstance(payload, dict):
            raise IdentityProviderError("Identity provider returned an unexpected payload")
        return payload


class UnconfiguredIdentityProvider(IdentityProvider):
    """Stand-in used when no provider is configured; nobody is ever authenticated."""

    def __init__(self) -> None:
        logging.getLogger("gatekeeper.services.identity_provider").warning(
            "identity_provider_unconfigured",
            extra={"hint": "set GATE_IDP_BASE_URL to enable session verification"},
        )

    def get_verified_identity(self, credentials: Optional[SessionCredentials]) -> Optional[VerifiedIdentity]:
        return None

    def fetch_primary_email(self, user_id: str) -> Optional[str]:
        return None

    def close(self) -> None:
        return None


def resolve_identity_email(provider: IdentityProvider, identity: VerifiedIdentity) -> Optional[str]:
    """Return the identity's email, looking it up by user id when the claims lack one."""

    if identity.email:
        return identity.email
    if not identity.user_id:
        return None
    try:
        return provider.fetch_primary_email(identity.user_id)
    except Exception:  # noqa: BLE001
        logging.getLogger("gatekeeper.services.identity_provider").warning(
            "identity_email_lookup_failed", extra={"user_id": identity.user_id}, exc_info=True
        )
        return None


def build_identity_provider(settings: AppSettings) -> IdentityProvider:
    if settings.idp_base_url:
        return HttpIdentityProvider(
            base_url=settings.idp_base_url,
            secret_key=settings.idp_secret_key,
            timeout=settings.idp_timeout_seconds,
        )
    return UnconfiguredIdentityProvider()
