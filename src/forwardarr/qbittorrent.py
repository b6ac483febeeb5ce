import json
import logging
from dataclasses import dataclass
from typing import Any

import requests
from requests import Response, Session
from requests.exceptions import RequestException, Timeout

from forwardarr.errors import (
    AuthError,
    AuthExpired,
    ClientError,
    ProtocolError,
    TransportError,
)

SESSION_COOKIE = "SID"
LOGIN_FAILURE_BODY = "Fails."
DEFAULT_TIMEOUT_SECONDS = 10.0


@dataclass(frozen=True)
class SessionCredential:
    name: str
    value: str

    def as_cookies(self) -> dict[str, str]:
        return {self.name: self.value}

    def __repr__(self) -> str:
        return f"SessionCredential(name={self.name!r}, value='***')"


class QBittorrentClient:
    """Session-aware client for the qBittorrent Web API v2.

    The SID cookie returned by the login endpoint is held as a
    ``SessionCredential`` and attached explicitly to each request. When an
    authenticated call is answered with 403 the client logs in once and
    repeats the call once; a second failure is raised to the caller.
    """

    def __init__(
        self,
        base_url: str,
        username: str,
        password: str,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        session: Any = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.api_url = f"{self.base_url}/api/v2"
        self.username = username
        self.password = password
        self.timeout = timeout
        self._session: Session = session if session is not None else requests.Session()
        self._credential: SessionCredential | None = None

    @property
    def credential(self) -> SessionCredential | None:
        return self._credential

    def authenticate(self) -> SessionCredential:
        response = self._send(
            "login",
            "POST",
            "auth/login",
            None,
            data={"username": self.username, "password": self.password},
            # qBittorrent rejects logins without a matching Referer when
            # CSRF protection is on
            headers={"Referer": self.base_url},
        )
        body = response.text.strip()
        if response.status_code == 403:
            raise AuthError("login", "client IP is banned after too many failed logins")
        if response.status_code != 200:
            self._raise_for_status("login", response)
        if body == LOGIN_FAILURE_BODY:
            raise AuthError("login", "invalid username or password")

        value = response.cookies.get(SESSION_COOKIE)
        if not value:
            raise ProtocolError("login", f"response did not set the {SESSION_COOKIE} cookie")

        # the credential is the only session state; keep the jar empty
        self._session.cookies.clear()
        self._credential = SessionCredential(SESSION_COOKIE, value)
        logging.debug("[qbittorrent] Authenticated with %s", self.base_url)
        return self._credential

    def get_port(self) -> int:
        response = self._call("preferences", "GET", "app/preferences")
        try:
            prefs = response.json()
        except ValueError as exc:
            raise ProtocolError("preferences", f"invalid JSON response: {exc}") from exc
        if not isinstance(prefs, dict):
            raise ProtocolError("preferences", "response is not a JSON object")

        port = prefs.get("listen_port")
        # bool is an int subclass
        if not isinstance(port, int) or isinstance(port, bool):
            raise ProtocolError("preferences", f"listen_port missing or invalid: {port!r}")
        return port

    def set_port(self, port: int) -> None:
        payload = json.dumps({"listen_port": port})
        self._call("setPreferences", "POST", "app/setPreferences", data={"json": payload})

    def ping(self) -> str:
        """Fetch the application version; no re-authentication is attempted."""
        response = self._send("version", "GET", "app/version", self._credential)
        if response.status_code == 403:
            raise AuthExpired("version", "session rejected")
        self._raise_for_status("version", response)
        return response.text.strip()

    def is_reachable(self) -> bool:
        try:
            self.ping()
        except ClientError as exc:
            logging.warning("[qbittorrent] Readiness check failed: %s", exc)
            return False
        return True

    def close(self) -> None:
        self._session.close()

    def _call(self, operation: str, method: str, endpoint: str, **kwargs: Any) -> Response:
        authenticated_now = False
        if self._credential is None:
            self.authenticate()
            authenticated_now = True

        response = self._send(operation, method, endpoint, self._credential, **kwargs)
        if response.status_code == 403 and not authenticated_now:
            logging.info("[qbittorrent] Session expired during %s, re-authenticating", operation)
            self.authenticate()
            response = self._send(operation, method, endpoint, self._credential, **kwargs)

        if response.status_code == 403:
            raise AuthExpired(operation, "session rejected after re-authentication")
        self._raise_for_status(operation, response)
        return response

    def _send(
        self,
        operation: str,
        method: str,
        endpoint: str,
        credential: SessionCredential | None,
        **kwargs: Any,
    ) -> Response:
        url = f"{self.api_url}/{endpoint}"
        cookies = credential.as_cookies() if credential is not None else None
        try:
            return self._session.request(
                method, url, cookies=cookies, timeout=self.timeout, **kwargs
            )
        except Timeout as exc:
            raise TransportError(operation, f"{method} {url} timed out after {self.timeout}s") from exc
        except RequestException as exc:
            raise TransportError(operation, f"{method} {url} failed: {exc}") from exc

    @staticmethod
    def _raise_for_status(operation: str, response: Response) -> None:
        status = response.status_code
        if 200 <= status < 300:
            return
        detail = f"HTTP {status}: {response.text.strip()[:200]}"
        if status >= 500:
            raise TransportError(operation, detail)
        raise ProtocolError(operation, detail)
