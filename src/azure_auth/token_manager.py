"""
Token refresh for Azure AD sessions.

This module keeps the stored session fresh:
- Single-flight refresh sequence (read refresh token, refresh, store)
- Background scheduler that refreshes ahead of expiry
- Manual "refresh now" and stop commands
- Expiry helpers for status display

The scheduler never retries on its own. A failed refresh is reported to
the caller and the next tick (or a manual refresh) is the retry.
"""

import asyncio
import enum
import inspect
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, Optional, Union

from .exceptions import AzurePimError
from .keychain import CredentialStore
from .oauth_client import OAuth2Client, TokenResponse

logger = logging.getLogger(__name__)

DEFAULT_MIN_INTERVAL_SECONDS = 60.0
STOP_TIMEOUT_SECONDS = 2.0


def compute_refresh_delay(
    expires_in: float,
    margin: float,
    floor: float = DEFAULT_MIN_INTERVAL_SECONDS,
) -> float:
    """
    Seconds between scheduled refreshes.

    Args:
        expires_in: Access token lifetime in seconds
        margin: Refresh this many seconds before expiry
        floor: Lower bound for the interval

    Returns:
        ``max(expires_in - margin, floor)``
    """
    return max(expires_in - margin, floor)


def time_until_expiry(expiry_iso: str, now: Optional[datetime] = None) -> Optional[timedelta]:
    """
    Time remaining until a stored expiry.

    Args:
        expiry_iso: Expiry as stored in the credential store (ISO-8601)
        now: Reference time (defaults to current UTC time)

    Returns:
        Remaining time, or None if the expiry has passed or cannot be parsed
    """
    try:
        expiry = datetime.fromisoformat(expiry_iso)
    except (TypeError, ValueError):
        logger.warning("Unparsable token expiry record")
        return None

    if expiry.tzinfo is None:
        expiry = expiry.replace(tzinfo=timezone.utc)

    remaining = expiry - (now or datetime.now(timezone.utc))
    if remaining <= timedelta(0):
        return None
    return remaining


def format_duration(duration: timedelta) -> str:
    """
    Human-readable duration for status display.

    Examples:
        30 seconds -> "< 1 min", 45 minutes -> "45 min",
        2 hours -> "2 hours", 90 minutes -> "1h 30m"
    """
    total_minutes = int(duration.total_seconds() // 60)

    if total_minutes < 1:
        return "< 1 min"
    if total_minutes < 60:
        return f"{total_minutes} min"

    hours, minutes = divmod(total_minutes, 60)
    if minutes == 0:
        return "1 hour" if hours == 1 else f"{hours} hours"
    return f"{hours}h {minutes}m"


@dataclass
class RefreshOutcome:
    """
    Result of one refresh attempt, as passed to the scheduler callback.

    Attributes:
        expires_at: New absolute expiry (success only)
        expires_in: New token lifetime in seconds (success only)
        error: Exception that stopped the refresh (failure only)
    """

    expires_at: Optional[datetime] = None
    expires_in: Optional[int] = None
    error: Optional[Exception] = None

    @property
    def ok(self) -> bool:
        return self.error is None


OnResult = Callable[[RefreshOutcome], Union[None, Awaitable[None]]]


class TokenRefresher:
    """
    Refresh sequence shared by every entry point.

    The lock makes the read-refresh-store sequence single-flight, so two
    refreshes never race on the same refresh token.
    """

    def __init__(self, oauth_client: OAuth2Client, store: CredentialStore):
        self.oauth_client = oauth_client
        self.store = store
        self._lock = asyncio.Lock()

    async def refresh_and_store(self) -> RefreshOutcome:
        """
        Refresh the access token and persist the result.

        Returns:
            Successful RefreshOutcome with the new expiry

        Raises:
            SecretNotFoundError: No refresh token stored
            KeychainError: Secret store failure
            TokenRefreshError: Provider or network failure
        """
        async with self._lock:
            return await self._refresh_locked()

    async def refresh_if_needed(self, needs_refresh: Callable[[], bool]) -> Optional[RefreshOutcome]:
        """
        Refresh only if ``needs_refresh()`` still says so once the lock is held.

        Callers that queued behind another refresh see the new expiry and
        skip their own round trip.

        Returns:
            RefreshOutcome if a refresh ran, None if it was not needed

        Raises:
            Same as ``refresh_and_store``
        """
        async with self._lock:
            if not needs_refresh():
                return None
            return await self._refresh_locked()

    async def _refresh_locked(self) -> RefreshOutcome:
        with self.store.get_refresh_token() as refresh_token:
            response = await self.oauth_client.refresh_token(refresh_token)
        expires_at = self.store.store_token_response(response)

        logger.info(
            "Token refreshed, expires in %s",
            format_duration(timedelta(seconds=response.expires_in)),
        )
        return RefreshOutcome(expires_at=expires_at, expires_in=response.expires_in)

    async def acquire_resource_token(self, resource_scope: str) -> TokenResponse:
        """
        Mint an access token for another API audience from the stored refresh token.

        Only a rotated refresh token is persisted; the resource token itself
        is returned to the caller and never stored.

        Raises:
            SecretNotFoundError: No refresh token stored
            TokenRefreshError: Provider or network failure
        """
        async with self._lock:
            with self.store.get_refresh_token() as refresh_token:
                response = await self.oauth_client.acquire_resource_token(
                    refresh_token, resource_scope
                )
            if response.refresh_token:
                self.store.store_refresh_token(response.refresh_token)
        return response

    async def try_refresh(self) -> RefreshOutcome:
        """Like ``refresh_and_store`` but reports failure in the outcome."""
        try:
            return await self.refresh_and_store()
        except AzurePimError as e:
            logger.error("Token refresh failed: %s", e)
            return RefreshOutcome(error=e)


class SchedulerCommand(enum.Enum):
    REFRESH_NOW = "refresh_now"
    STOP = "stop"


class TokenRefreshScheduler:
    """
    Background refresh loop.

    Only one loop is active at a time: ``start()`` stops the previous loop
    before arming a new one. The timer and the command queue are awaited
    together, so a tick and a command are served in arrival order.
    """

    def __init__(
        self,
        refresher: TokenRefresher,
        min_interval_seconds: float = DEFAULT_MIN_INTERVAL_SECONDS,
        stop_timeout: float = STOP_TIMEOUT_SECONDS,
        on_result: Optional[OnResult] = None,
    ):
        """
        Initialize scheduler.

        Args:
            refresher: Refresh sequence to run on each tick
            min_interval_seconds: Floor for the refresh interval
            stop_timeout: How long ``stop()`` waits before cancelling the loop
            on_result: Default callback for refresh outcomes
        """
        self.refresher = refresher
        self.min_interval_seconds = min_interval_seconds
        self.stop_timeout = stop_timeout
        self.interval: Optional[float] = None
        self._on_result = on_result
        self._commands: Optional["asyncio.Queue[SchedulerCommand]"] = None
        self._task: Optional[asyncio.Task] = None

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(
        self, expires_in: float, margin: float, on_result: Optional[OnResult] = None
    ) -> float:
        """
        Arm the refresh loop.

        The first tick is suppressed: the first refresh happens one full
        interval after ``start()``.

        Args:
            expires_in: Lifetime of the token that was just obtained
            margin: Refresh this many seconds before expiry
            on_result: Called with a RefreshOutcome after every refresh;
                may be a plain function or a coroutine function (keeps the
                current callback if not provided)

        Returns:
            Refresh interval in seconds
        """
        await self.stop()

        interval = compute_refresh_delay(expires_in, margin, self.min_interval_seconds)
        self.interval = interval
        if on_result is not None:
            self._on_result = on_result
        self._commands = asyncio.Queue()
        self._task = asyncio.create_task(
            self._run(interval, self._commands), name="token-refresh-scheduler"
        )
        logger.info("Token refresh scheduled every %s", format_duration(timedelta(seconds=interval)))
        return interval

    async def stop(self) -> None:
        """Stop the loop. Safe to call when already stopped."""
        task, commands = self._task, self._commands
        self._task = None
        self._commands = None

        if task is None or task.done():
            return

        commands.put_nowait(SchedulerCommand.STOP)

        # Called from inside on_result: the loop exits once the callback returns
        if task is asyncio.current_task():
            return

        done, _ = await asyncio.wait({task}, timeout=self.stop_timeout)
        if not done:
            logger.warning("Refresh loop did not stop in time, cancelling")
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
        logger.debug("Token refresh scheduler stopped")

    async def refresh_now(self) -> Optional[RefreshOutcome]:
        """
        Refresh immediately.

        Returns:
            None when the command was queued to the running loop (the
            outcome goes to ``on_result``); the RefreshOutcome when the
            loop is not running and the refresh ran inline
        """
        if self.is_running:
            logger.debug("Queueing manual refresh")
            self._commands.put_nowait(SchedulerCommand.REFRESH_NOW)
            return None

        outcome = await self._refresh()
        await self._report(outcome)
        return outcome

    async def _refresh(self) -> RefreshOutcome:
        try:
            return await self.refresher.try_refresh()
        except Exception as e:
            # Anything escaping here would end the loop without a report
            logger.exception("Unexpected error during token refresh")
            return RefreshOutcome(error=e)

    async def _run(self, interval: float, commands: "asyncio.Queue[SchedulerCommand]") -> None:
        loop = asyncio.get_running_loop()
        next_tick = loop.time() + interval

        while True:
            try:
                command = await asyncio.wait_for(commands.get(), max(next_tick - loop.time(), 0))
            except asyncio.TimeoutError:
                now = loop.time()
                while next_tick <= now:
                    next_tick += interval
                logger.debug("Scheduled token refresh")
                await self._report(await self._refresh())
                continue

            if command is SchedulerCommand.STOP:
                logger.debug("Refresh loop received stop")
                return

            logger.debug("Manual token refresh")
            await self._report(await self._refresh())

    async def _report(self, outcome: RefreshOutcome) -> None:
        if self._on_result is None:
            return
        try:
            result = self._on_result(outcome)
            if inspect.isawaitable(result):
                await result
        except Exception:
            logger.exception("Refresh result callback failed")
