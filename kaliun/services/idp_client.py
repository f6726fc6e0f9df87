"""HTTP client for the external identity provider (GoTrue-compatible REST API)."""

import logging
from dataclasses import dataclass, field
from typing import Any, Optional
from urllib.parse import urlencode

import httpx

logger = logging.getLogger(__name__)


class IdpError(RuntimeError):
    """The identity provider rejected a request or could not be reached."""

    def __init__(self, message: str, *, status_code: int = 0):
        super().__init__(message)
        self.status_code = status_code


@dataclass
class IdpUser:
    id: str
    email: str
    name: Optional[str] = None
    provider: str = "idp"


@dataclass
class IdpSession:
    access_token: str
    refresh_token: str
    expires_in: int
    user: IdpUser


def _parse_user(data: dict[str, Any]) -> IdpUser:
    metadata = data.get("user_metadata") or {}
    app_metadata = data.get("app_metadata") or {}
    return IdpUser(
        id=str(data["id"]),
        email=str(data.get("email") or "").lower(),
        name=metadata.get("name") or metadata.get("full_name"),
        provider=app_metadata.get("provider") or "idp",
    )


def _parse_session(data: dict[str, Any]) -> IdpSession:
    return IdpSession(
        access_token=data["access_token"],
        refresh_token=data.get("refresh_token") or "",
        expires_in=int(data.get("expires_in") or 3600),
        user=_parse_user(data["user"]),
    )


def _error_message(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        return response.text or f"HTTP {response.status_code}"
    return (
        payload.get("error_description")
        or payload.get("msg")
        or payload.get("message")
        or payload.get("error")
        or f"HTTP {response.status_code}"
    )


@dataclass
class IdpClient:
    base_url: str
    anon_key: str = ""
    service_key: str = ""
    timeout: float = 10.0
    transport: Optional[httpx.BaseTransport] = field(default=None, repr=False)

    @classmethod
    def from_settings(cls, settings: Any) -> "IdpClient":
        return cls(
            base_url=settings.idp_url,
            anon_key=settings.idp_anon_key,
            service_key=settings.idp_service_key,
            timeout=settings.idp_timeout_seconds,
        )

    def _client(self) -> httpx.Client:
        return httpx.Client(
            base_url=self.base_url.rstrip("/"),
            timeout=self.timeout,
            transport=self.transport,
            headers={"apikey": self.anon_key},
        )

    def _post(self, path: str, *, json: dict[str, Any], params: Optional[dict[str, str]] = None,
              headers: Optional[dict[str, str]] = None) -> httpx.Response:
        try:
            with self._client() as client:
                return client.post(path, json=json, params=params, headers=headers)
        except httpx.HTTPError as e:
            raise IdpError(f"Identity provider unreachable: {e}") from e

    def get_user(self, access_token: str) -> Optional[IdpUser]:
        """The user behind an access token, or None if the token is not (or no longer) valid."""
        try:
            with self._client() as client:
                response = client.get("/auth/v1/user", headers={"Authorization": f"Bearer {access_token}"})
        except httpx.HTTPError as e:
            raise IdpError(f"Identity provider unreachable: {e}") from e
        if response.status_code in (401, 403):
            return None
        if response.is_error:
            raise IdpError(_error_message(response), status_code=response.status_code)
        return _parse_user(response.json())

    def refresh_session(self, refresh_token: str) -> Optional[IdpSession]:
        response = self._post(
            "/auth/v1/token",
            params={"grant_type": "refresh_token"},
            json={"refresh_token": refresh_token},
        )
        if response.is_error:
            logger.info("IdP refresh rejected: %s", _error_message(response))
            return None
        return _parse_session(response.json())

    def authorize_url(self, provider: str, redirect_to: str, code_challenge: str) -> str:
        """Where to send the browser for an OAuth sign-in with `provider` (PKCE, S256)."""
        query = urlencode({
            "provider": provider,
            "redirect_to": redirect_to,
            "code_challenge": code_challenge,
            "code_challenge_method": "s256",
        })
        return f"{self.base_url.rstrip('/')}/auth/v1/authorize?{query}"

    def exchange_code(self, auth_code: str, code_verifier: str) -> IdpSession:
        """Trade the code from the OAuth callback for a session."""
        response = self._post(
            "/auth/v1/token",
            params={"grant_type": "pkce"},
            json={"auth_code": auth_code, "code_verifier": code_verifier},
        )
        if response.is_error:
            raise IdpError(_error_message(response), status_code=response.status_code)
        return _parse_session(response.json())

    def sign_in_with_password(self, email: str, password: str) -> IdpSession:
        response = self._post(
            "/auth/v1/token",
            params={"grant_type": "password"},
            json={"email": email, "password": password},
        )
        if response.is_error:
            raise IdpError(_error_message(response), status_code=response.status_code)
        return _parse_session(response.json())

    def create_user(self, email: str, password: str, name: str) -> IdpUser:
        """Create an already-confirmed user through the admin API."""
        key = self.service_key or self.anon_key
        response = self._post(
            "/auth/v1/admin/users",
            json={
                "email": email,
                "password": password,
                "email_confirm": True,
                "user_metadata": {"name": name},
            },
            headers={"apikey": key, "Authorization": f"Bearer {key}"},
        )
        if response.is_error:
            raise IdpError(_error_message(response), status_code=response.status_code)
        return _parse_user(response.json())

    def sign_out(self, access_token: str) -> None:
        response = self._post(
            "/auth/v1/logout",
            json={},
            headers={"Authorization": f"Bearer {access_token}"},
        )
        if response.is_error and response.status_code not in (401, 403, 404):
            raise IdpError(_error_message(response), status_code=response.status_code)

    def update_user_name(self, user_id: str, name: str) -> None:
        key = self.service_key or self.anon_key
        try:
            with self._client() as client:
                response = client.put(
                    f"/auth/v1/admin/users/{user_id}",
                    json={"user_metadata": {"name": name}},
                    headers={"apikey": key, "Authorization": f"Bearer {key}"},
                )
        except httpx.HTTPError as e:
            raise IdpError(f"Identity provider unreachable: {e}") from e
        if response.is_error:
            raise IdpError(_error_message(response), status_code=response.status_code)
