"""HTTP client for the lending API.

Authentication state is an explicit ``Session`` value handed to every call
instead of a token stored on the client. A session is obtained with
``login`` and renewed with ``refresh_session``, which returns a new
``Session`` or raises ``AuthError``; the refresh token itself travels as a
server-set cookie kept by the underlying ``httpx.Client``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

import httpx

from config import settings
from errors import AuthError, ExternalServiceError, LibraryError, ValidationError, error_from_response
from member import ByMemberId, ByNic, MemberIdentifier

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Session:
    access_token: str
    user: Dict[str, Any] = field(default_factory=dict)

    @property
    def role(self) -> Optional[str]:
        return self.user.get("role")


class LibraryClient:
    """Synchronous client mirroring the server's lending, auth and password-reset routes."""

    def __init__(self, base_url: Optional[str] = None, timeout: Optional[float] = None,
                 api_key: Optional[str] = None, transport: Optional[httpx.BaseTransport] = None) -> None:
        self.api_key = api_key
        self._client = httpx.Client(
            base_url=base_url or settings.auth_base_url,
            timeout=timeout or settings.http_timeout,
            follow_redirects=True,
            transport=transport,
        )

    def __enter__(self) -> "LibraryClient":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def close(self) -> None:
        self._client.close()

    # ------------------------- Transport ------------------------- #
    def _headers(self, session: Optional[Session]) -> Dict[str, str]:
        headers: Dict[str, str] = {}
        if session is not None:
            headers["Authorization"] = f"Bearer {session.access_token}"
        if self.api_key:
            headers["X-API-Key"] = self.api_key
        return headers

    def _request(self, method: str, path: str, session: Optional[Session] = None, **kwargs) -> Any:
        try:
            response = self._client.request(method, path, headers=self._headers(session), **kwargs)
        except httpx.RequestError as exc:
            logger.error(f"{method} {path} failed: {exc}")
            raise ExternalServiceError(f"Library API unreachable: {exc}") from exc

        try:
            payload = response.json() if response.content else None
        except ValueError:
            payload = {"detail": response.text}
        if response.is_error:
            logger.warning(f"{method} {path} -> {response.status_code}")
            raise error_from_response(response.status_code, payload)
        return payload

    # ------------------------- Session ------------------------- #
    def login(self, email: str, password: str) -> Session:
        try:
            data = self._request("POST", "/auth/login", json={"email": email, "password": password})
        except (ValidationError, AuthError) as exc:
            raise AuthError(f"Login failed: {exc.message}") from exc
        token = (data or {}).get("accessToken")
        if not token:
            raise AuthError("Login response did not include an access token.")
        user = {k: v for k, v in data.items() if k != "accessToken"}
        return Session(access_token=token, user=user)

    def refresh_session(self) -> Session:
        """Exchange the refresh cookie for a new session, or raise ``AuthError``."""
        try:
            data = self._request("POST", "/auth/refresh-token")
            token = (data or {}).get("accessToken")
            if not token:
                raise AuthError("Refresh response did not include an access token.")
            session = Session(access_token=token)
            user = self._request("GET", "/auth/me", session)
        except AuthError:
            raise
        except LibraryError as exc:
            raise AuthError(f"Session refresh failed: {exc.message}") from exc
        return Session(access_token=token, user=user or {})

    def logout(self, session: Session) -> None:
        self._request("POST", "/auth/logout", session)

    # ------------------------- Lending ------------------------- #
    def lend_book(self, session: Session, identifier: MemberIdentifier, isbn: str) -> Dict[str, Any]:
        if isinstance(identifier, ByMemberId):
            body = {"memberId": identifier.member_id}
        elif isinstance(identifier, ByNic):
            body = {"nic": identifier.nic}
        else:
            raise ValidationError("Provide either a member ID or a NIC.")
        body["isbn"] = isbn
        return self._request("POST", "/lending/lend", session, json=body)

    def return_book(self, session: Session, lending_id) -> Dict[str, Any]:
        return self._request("POST", f"/lending/return/{lending_id}", session)

    def list_lendings(self, session: Session, search: Optional[str] = None,
                      status: Optional[str] = None) -> List[Dict[str, Any]]:
        params = {k: v for k, v in (("q", search), ("status", status)) if v}
        return self._request("GET", "/lending", session, params=params)

    def list_overdue(self, session: Session) -> List[Dict[str, Any]]:
        return self._request("GET", "/lending/overdue", session)["overdue"]

    def notify_overdues(self, session: Session) -> List[Dict[str, Any]]:
        """Ask the server to prepare overdue notices; returns one notice per reader."""
        return self._request("POST", "/lending/notify-overdues", session)["notices"]

    def list_returned_overdue(self, session: Session) -> List[Dict[str, Any]]:
        return self._request("GET", "/lending/overdue-returned", session)

    def lendings_for_book(self, session: Session, isbn: str) -> List[Dict[str, Any]]:
        return self._request("GET", f"/lending/book/{isbn}", session)

    def lendings_for_member(self, session: Session, member_id: str) -> List[Dict[str, Any]]:
        return self._request("GET", f"/lending/reader/{member_id}", session)

    # ------------------------- Password reset ------------------------- #
    def request_password_reset_otp(self, email: str) -> Dict[str, Any]:
        return self._request("POST", "/auth/forgot-password", json={"email": email})

    def verify_otp(self, email: str, otp: str) -> Dict[str, Any]:
        return self._request("POST", "/auth/verify-otp", json={"email": email, "otp": otp})

    def reset_password(self, email: str, otp: str, new_password: str) -> Dict[str, Any]:
        return self._request(
            "POST", "/auth/reset-password", json={"email": email, "otp": otp, "newPassword": new_password}
        )


class ResetStep(str, Enum):
    REQUEST_OTP = "request_otp"
    VERIFY_OTP = "verify_otp"
    NEW_PASSWORD = "new_password"
    DONE = "done"


class PasswordResetFlow:
    """Three-step OTP password reset: request an OTP, verify it, set a new password."""

    MIN_PASSWORD_LENGTH = 6

    def __init__(self, client: LibraryClient, email: str) -> None:
        if not email or not email.strip():
            raise ValidationError("Email is required.")
        self.client = client
        self.email = email.strip().lower()
        self.step = ResetStep.REQUEST_OTP
        self._otp: Optional[str] = None

    def _expect(self, step: ResetStep) -> None:
        if self.step is not step:
            raise ValidationError(f"Password reset is at step '{self.step.value}', not '{step.value}'.")

    def request_otp(self) -> None:
        self._expect(ResetStep.REQUEST_OTP)
        self.client.request_password_reset_otp(self.email)
        self.step = ResetStep.VERIFY_OTP

    def verify(self, otp: str) -> None:
        self._expect(ResetStep.VERIFY_OTP)
        otp = (otp or "").strip()
        if not otp:
            raise ValidationError("OTP is required.")
        self.client.verify_otp(self.email, otp)
        self._otp = otp
        self.step = ResetStep.NEW_PASSWORD

    def reset(self, new_password: str, confirm_password: str) -> None:
        self._expect(ResetStep.NEW_PASSWORD)
        if new_password != confirm_password:
            raise ValidationError("Passwords do not match.")
        if len(new_password) < self.MIN_PASSWORD_LENGTH:
            raise ValidationError(f"Password must be at least {self.MIN_PASSWORD_LENGTH} characters.")
        self.client.reset_password(self.email, self._otp, new_password)
        self.step = ResetStep.DONE
