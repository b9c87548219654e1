"""Session token handling.

This module provides:
- decode_token_payload: Read the claims of a JWT without verifying it
- token_expiry: Expiry instant of a token
- TokenAdapter: Cached bearer token with coalesced, eager refresh

The signature is checked by the server; the client only needs the expiry
to decide when to refresh.
"""

from __future__ import annotations

import base64
import binascii
import json
import logging
import threading
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Any

from shotmover.client.events import AUTH_INVALID, AUTH_REFRESHED
from shotmover.core.clock import Clock, parse_instant
from shotmover.core.errors import Rejected, Unauthenticated, Unreachable

if TYPE_CHECKING:
    from shotmover.client.events import EventBus

logger = logging.getLogger(__name__)

REFRESH_THRESHOLD = timedelta(minutes=5)
REFRESH_TICK_INTERVAL = 120.0  # seconds

Refresher = Callable[[str], str]


def decode_token_payload(token: str) -> dict[str, Any]:
    """Decode the payload segment of a JWT.

    Args:
        token: Encoded JWT ("header.payload.signature").

    Returns:
        Payload claims.

    Raises:
        ValueError: If the token is not a decodable JWT.
    """
    parts = token.split(".")
    if len(parts) != 3:
        raise ValueError("Token is not a JWT")
    segment = parts[1]
    segment += "=" * (-len(segment) % 4)
    try:
        payload = json.loads(base64.urlsafe_b64decode(segment))
    except (binascii.Error, UnicodeDecodeError, json.JSONDecodeError) as e:
        raise ValueError(f"Token payload cannot be decoded: {e}") from e
    if not isinstance(payload, dict):
        raise ValueError("Token payload is not an object")
    return payload


def token_expiry(token: str) -> datetime | None:
    """Get the expiry instant of a token.

    Reads the ``expires_at`` claim (ISO-8601), falling back to the
    standard numeric ``exp`` claim.

    Returns:
        Expiry instant, or None if the token carries none or is opaque.
    """
    try:
        payload = decode_token_payload(token)
    except ValueError:
        return None
    if payload.get("expires_at"):
        try:
            return parse_instant(str(payload["expires_at"]))
        except ValueError:
            return None
    if isinstance(payload.get("exp"), int | float):
        return datetime.fromtimestamp(payload["exp"], UTC)
    return None


def token_email(token: str) -> str | None:
    """Get the account email carried by a token."""
    try:
        return decode_token_payload(token).get("email")
    except ValueError:
        return None


class TokenAdapter:
    """Supplies a valid bearer token to the sinks and the poller.

    The token is refreshed eagerly once it is within five minutes of
    expiry. Concurrent callers that need a refresh share one refresh call.
    When a refresh fails for good, ``auth.invalid`` is published and the
    adapter keeps failing with Unauthenticated until a new token is set.

    Usage:
        adapter = TokenAdapter(token, refresher=client.login_refresh, bus=bus)
        adapter.start()  # background refresh check
        token, expires_at = adapter.get_token()
        adapter.stop()
    """

    def __init__(
        self,
        token: str | None,
        refresher: Refresher | None = None,
        bus: EventBus | None = None,
        clock: Clock | None = None,
        threshold: timedelta = REFRESH_THRESHOLD,
        tick_interval: float = REFRESH_TICK_INTERVAL,
        on_token_changed: Callable[[str], None] | None = None,
    ) -> None:
        """Initialize the adapter.

        Args:
            token: Current token (None if not logged in).
            refresher: Exchanges a token for a fresh one.
            bus: Event bus for auth.invalid / auth.refreshed.
            clock: Time source.
            threshold: Refresh when time to expiry is at most this.
            tick_interval: Seconds between background refresh checks.
            on_token_changed: Called with each new token (e.g., to persist it).
        """
        self._refresher = refresher
        self._bus = bus
        self._clock = clock or Clock()
        self._threshold = threshold
        self._tick_interval = tick_interval
        self._on_token_changed = on_token_changed

        self._lock = threading.Lock()
        self._refresh_lock = threading.Lock()
        self._token = token
        self._expires_at = token_expiry(token) if token else None
        self._generation = 0
        self._invalid = token is None

        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def is_valid(self) -> bool:
        """Check if a usable token is held."""
        with self._lock:
            return not self._invalid and self._token is not None

    @property
    def expires_at(self) -> datetime | None:
        """Expiry instant of the cached token."""
        with self._lock:
            return self._expires_at

    def set_token(self, token: str) -> None:
        """Replace the cached token (e.g., after a fresh login)."""
        with self._lock:
            self._token = token
            self._expires_at = token_expiry(token)
            self._generation += 1
            was_invalid = self._invalid
            self._invalid = False
        if self._on_token_changed:
            self._on_token_changed(token)
        if was_invalid and self._bus:
            self._bus.publish(AUTH_REFRESHED, expires_at=_iso(self._expires_at))

    def expiring_soon(self) -> bool:
        """Check if the token expires within the refresh threshold."""
        with self._lock:
            return self._expiring_soon_locked()

    def _expiring_soon_locked(self) -> bool:
        if self._expires_at is None:
            return False
        return self._expires_at - self._clock.now() <= self._threshold

    def get_token(self) -> tuple[str, datetime | None]:
        """Get a valid token, refreshing it first if it expires soon.

        Returns:
            Tuple of (token, expires_at).

        Raises:
            Unauthenticated: If no usable token can be supplied.
        """
        with self._lock:
            if self._invalid or self._token is None:
                raise Unauthenticated("Not logged in or session expired")
            if not self._expiring_soon_locked():
                return self._token, self._expires_at
            generation = self._generation

        self._refresh(generation)
        with self._lock:
            if self._token is None:
                raise Unauthenticated("Not logged in or session expired")
            return self._token, self._expires_at

    def bearer(self) -> str:
        """Get a valid token string (TokenSupplier interface)."""
        return self.get_token()[0]

    def report_rejected(self, token: str) -> None:
        """Record that the server refused a token.

        The next get_token() refreshes it, whatever its claimed expiry.
        """
        with self._lock:
            if token == self._token:
                self._expires_at = self._clock.now()

    def refresh(self) -> str:
        """Force a refresh of the cached token.

        Returns:
            The new token.

        Raises:
            Unauthenticated: If the refresh failed.
        """
        with self._lock:
            generation = self._generation
        self._refresh(generation)
        with self._lock:
            if self._token is None or self._invalid:
                raise Unauthenticated("Token refresh failed")
            return self._token

    def _refresh(self, generation: int) -> None:
        """Refresh unless another caller already did since `generation`."""
        with self._refresh_lock:
            with self._lock:
                if self._generation != generation:
                    # Someone refreshed while we waited for the lock
                    return
                current = self._token
                expired = self._expires_at is not None and self._expires_at <= self._clock.now()

            if self._refresher is None or current is None:
                if expired or current is None:
                    self._mark_invalid("Token expired and no refresher is configured")
                    raise Unauthenticated("Token expired")
                return

            try:
                new_token = self._refresher(current)
            except (Unreachable, Rejected) as e:
                # Keep using the current token while it lasts
                logger.warning(f"Token refresh deferred: {e}")
                if expired:
                    raise Unauthenticated("Token expired and refresh is unreachable") from e
                return
            except Unauthenticated as e:
                self._mark_invalid(str(e))
                raise

            logger.info("Session token refreshed")
            self.set_token(new_token)

    def _mark_invalid(self, reason: str) -> None:
        with self._lock:
            already = self._invalid
            self._invalid = True
        if not already:
            logger.warning(f"Session is no longer valid: {reason}")
            if self._bus:
                self._bus.publish(AUTH_INVALID, reason=reason)

    # === Background refresh check ===

    def start(self) -> None:
        """Start the background refresh check."""
        if self._thread and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._tick_loop,
            name="TokenRefresh",
            daemon=True,
        )
        self._thread.start()

    def stop(self) -> None:
        """Stop the background refresh check."""
        self._stop_event.set()
        if self._thread:
            self._thread.join(timeout=2.0)
            self._thread = None

    def _tick_loop(self) -> None:
        while not self._stop_event.wait(self._tick_interval):
            if not self.expiring_soon() or not self.is_valid:
                continue
            try:
                self.get_token()
            except Unauthenticated:
                logger.debug("Background refresh failed")


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None
