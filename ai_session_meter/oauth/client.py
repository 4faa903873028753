"""
Usage API client.

Fetches the externally tracked utilization percentages for the rolling
session window and the weekly period.

The client never retries. Callers decide whether a failure is transient
(poll again later) or permanent (stop polling and run on log data only)
using ``is_transient_error``.
"""

import json
import logging
import subprocess
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import httpx

from ai_session_meter.data.models import ExternalUsage, ExternalUtilization
from ai_session_meter.data.parser import ParseError, parse_timestamp

logger = logging.getLogger(__name__)

USAGE_ENDPOINT = "https://api.anthropic.com/api/oauth/usage"
CREDENTIALS_FILE = Path.home() / ".claude" / ".credentials.json"
KEYCHAIN_SERVICE = "Claude Code-credentials"
REQUIRED_SCOPE = "user:profile"

_TRANSIENT_MARKERS = ("network", "timeout", "timed out", "connection", "eof", "reset by peer")


class UsageApiError(Exception):
    """Raised when the usage API returns an error or cannot be reached."""

    def __init__(self, message: str, status_code: Optional[int] = None, transient: bool = False):
        super().__init__(message)
        self.status_code = status_code
        self.transient = transient


class TokenExpiredError(UsageApiError):
    """Raised when the access token has expired and the user must log in again."""

    def __init__(self):
        super().__init__(
            "OAuth token expired - run 'claude logout && claude login' to re-authenticate",
            status_code=401,
        )


class CredentialsError(Exception):
    """Raised when no usable credentials are available."""


@dataclass(frozen=True)
class OAuthCredentials:
    """Access token and scopes read from the local credential store."""
    access_token: str
    scopes: List[str]
    subscription_type: Optional[str] = None


def _read_credentials_file(path: Path) -> Optional[str]:
    if not path.exists():
        return None
    return path.read_text(encoding="utf-8")


def _read_keychain() -> Optional[str]:
    try:
        result = subprocess.run(
            ["security", "find-generic-password", "-s", KEYCHAIN_SERVICE, "-w"],
            capture_output=True,
            text=True,
            check=True,
        )
    except (OSError, subprocess.CalledProcessError):
        return None
    return result.stdout


def load_credentials(
    path: Path = CREDENTIALS_FILE,
    keychain_reader: Callable[[], Optional[str]] = _read_keychain,
) -> OAuthCredentials:
    """Load OAuth credentials from the credentials file or the macOS keychain.

    Args:
        path: Credentials JSON file checked first
        keychain_reader: Fallback returning the raw keychain JSON

    Returns:
        OAuthCredentials with the access token

    Raises:
        CredentialsError: If no credentials exist, they are malformed, or
            they lack the required scope
    """
    raw = _read_credentials_file(path) or keychain_reader()
    if not raw:
        raise CredentialsError("No OAuth credentials found")

    try:
        data = json.loads(raw)
        oauth = data["claudeAiOauth"]
        token = oauth["accessToken"]
    except (json.JSONDecodeError, KeyError, TypeError) as e:
        raise CredentialsError(f"Failed to parse credentials: {e}")

    scopes = oauth.get("scopes") or []
    if REQUIRED_SCOPE not in scopes:
        raise CredentialsError(
            f"OAuth token lacks required '{REQUIRED_SCOPE}' scope. "
            "Try re-authenticating: claude logout && claude login"
        )

    return OAuthCredentials(
        access_token=token,
        scopes=list(scopes),
        subscription_type=oauth.get("subscriptionType"),
    )


class UsageApiClient:
    """Synchronous httpx client for the usage endpoint."""

    def __init__(
        self,
        credentials: OAuthCredentials,
        endpoint: str = USAGE_ENDPOINT,
        timeout: float = 10.0,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self._credentials = credentials
        self._endpoint = endpoint
        self._timeout = timeout
        self._transport = transport

    @property
    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self._credentials.access_token}",
            "anthropic-beta": "oauth-2025-04-20",
            "Content-Type": "application/json",
        }

    def fetch_usage(self, now: Optional[datetime] = None) -> ExternalUsage:
        """Fetch current utilization for the session and weekly periods.

        The weekly Sonnet and Opus periods are only present while the
        service enforces separate per-model quotas.

        Args:
            now: Fetch timestamp recorded on the result (defaults to wall clock)

        Returns:
            ExternalUsage; periods missing from the response are None

        Raises:
            TokenExpiredError: If the API reports an expired token
            UsageApiError: On any other HTTP or transport failure
        """
        try:
            with httpx.Client(timeout=self._timeout, transport=self._transport) as client:
                resp = client.get(self._endpoint, headers=self._headers)
        except httpx.TimeoutException:
            raise UsageApiError("Usage API request timed out", transient=True)
        except httpx.TransportError as e:
            raise UsageApiError(f"Usage API connection failed: {e}", transient=True)

        if resp.status_code != 200:
            body = _safe_json(resp)
            if resp.status_code == 401 and _error_code(body) == "token_expired":
                raise TokenExpiredError()
            raise UsageApiError(
                f"Usage API returned status {resp.status_code}: {body or resp.text}",
                status_code=resp.status_code,
                transient=resp.status_code >= 500 or resp.status_code == 429,
            )

        body = _safe_json(resp)
        if body is None:
            raise UsageApiError("Failed to decode usage API response")

        fetched_at = now or datetime.now(timezone.utc)
        usage = ExternalUsage(
            session=_parse_period(body.get("five_hour"), fetched_at),
            weekly=_parse_period(body.get("seven_day"), fetched_at),
            weekly_sonnet=_parse_period(body.get("seven_day_sonnet"), fetched_at),
            weekly_opus=_parse_period(body.get("seven_day_opus"), fetched_at),
        )
        logger.debug(
            "Usage API: session=%s weekly=%s",
            usage.session.percent_used if usage.session else None,
            usage.weekly.percent_used if usage.weekly else None,
        )
        return usage


def is_transient_error(err: Optional[BaseException]) -> bool:
    """Return True if the failure is likely to clear up on a later poll.

    An expired token and missing credentials are permanent; they need user
    action before polling can succeed.
    """
    if err is None:
        return False
    if isinstance(err, (TokenExpiredError, CredentialsError)):
        return False
    if isinstance(err, UsageApiError) and err.transient:
        return True
    text = str(err).lower()
    return any(marker in text for marker in _TRANSIENT_MARKERS)


def _safe_json(resp: httpx.Response) -> Optional[Dict[str, Any]]:
    try:
        body = resp.json()
    except ValueError:
        return None
    return body if isinstance(body, dict) else None


def _error_code(body: Optional[Dict[str, Any]]) -> Optional[str]:
    if not body:
        return None
    error = body.get("error")
    if not isinstance(error, dict):
        return None
    details = error.get("details")
    if not isinstance(details, dict):
        return None
    return details.get("error_code")


def _parse_period(data: Any, fetched_at: datetime) -> Optional[ExternalUtilization]:
    """Parse one period block; malformed or partial blocks count as absent."""
    if not isinstance(data, dict):
        return None
    utilization = data.get("utilization")
    resets_at = data.get("resets_at")
    if utilization is None or not resets_at:
        return None
    try:
        return ExternalUtilization(
            percent_used=float(utilization),
            resets_at=parse_timestamp(resets_at),
            fetched_at=fetched_at,
        )
    except (ParseError, TypeError, ValueError):
        logger.warning("Ignoring malformed usage period: %r", data)
        return None
