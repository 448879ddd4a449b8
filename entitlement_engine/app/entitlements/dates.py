"""Conversion of caller-supplied calendar dates into authoritative UTC instants."""
from __future__ import annotations

from datetime import date, datetime, timezone
from typing import Callable, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from ..callcontext import InternalCallContext
from ..exceptions import AccountApiError, EntitlementApiError, ErrorCode
from ..subscriptions.api import AccountInternalApi


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def resolve(
    requested_date: Optional[date],
    reference_time: datetime,
    time_zone: ZoneInfo,
    now: datetime,
) -> datetime:
    """Return the UTC instant for ``requested_date`` in ``time_zone``, never after ``now``.

    The wall-clock time of day is taken from ``reference_time`` as seen in
    ``time_zone`` rather than midnight, so a same-day request lands on a past
    instant instead of a future one and DST offsets are those of the requested
    day. A missing date means ``now``.
    """

    now = _as_utc(now)
    if requested_date is None:
        return now

    local_reference = _as_utc(reference_time).astimezone(time_zone)
    local_requested = datetime.combine(
        requested_date,
        local_reference.time(),
        tzinfo=time_zone,
    )
    computed = local_requested.astimezone(timezone.utc)
    return now if computed > now else computed


class EntitlementDateHelper:
    """Resolves local dates using the account's time zone and an injected clock."""

    def __init__(
        self,
        account_api: AccountInternalApi,
        *,
        clock: Optional[Callable[[], datetime]] = None,
        default_time_zone: Optional[ZoneInfo] = None,
    ) -> None:
        self._account_api = account_api
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._default_time_zone = default_time_zone

    def now(self) -> datetime:
        return _as_utc(self._clock())

    def account_time_zone(self, context: InternalCallContext) -> ZoneInfo:
        if context.account_id is None:
            raise EntitlementApiError.of(
                ErrorCode.ACCOUNT_TIMEZONE_UNRESOLVED,
                "Operation context is not scoped to an account",
            )
        try:
            time_zone = self._account_api.get_account_time_zone(context.account_id, context.tenant_id)
        except AccountApiError as exc:
            raise EntitlementApiError.of(
                ErrorCode.ACCOUNT_TIMEZONE_UNRESOLVED,
                str(exc),
                account_id=context.account_id,
            ) from exc
        if time_zone is None and self._default_time_zone is not None:
            return self._default_time_zone
        if time_zone is None:
            raise EntitlementApiError.of(
                ErrorCode.ACCOUNT_TIMEZONE_UNRESOLVED,
                f"Account {context.account_id} has no time zone",
                account_id=context.account_id,
            )
        if isinstance(time_zone, str):
            try:
                return ZoneInfo(time_zone)
            except (ZoneInfoNotFoundError, ValueError) as exc:
                raise EntitlementApiError.of(
                    ErrorCode.ACCOUNT_TIMEZONE_UNRESOLVED,
                    f"Unknown time zone {time_zone!r}",
                    account_id=context.account_id,
                ) from exc
        return time_zone

    def from_local_date_and_reference_time(
        self,
        requested_date: Optional[date],
        reference_time: datetime,
        context: InternalCallContext,
    ) -> datetime:
        """Resolve ``requested_date`` for the context's account; see :func:`resolve`."""

        now = self.now()
        if requested_date is None:
            return now
        return resolve(requested_date, reference_time, self.account_time_zone(context), now)
