"""Per-account quota ledger and round-robin account rotation.

Each destination account has a byte budget per cycle. Dispatchers reserve an
estimate when they pick an account and settle it with the actual byte count
once the engine reports the batch done, so parallel workers never oversubscribe
an account. All ledger mutations happen under a single lock.
"""

from __future__ import annotations

import json
import logging
import secrets
import threading
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Callable

from .constants import GIB
from .errors import QuotaExhaustedError
from .utils import format_bytes, iso, utc_now

logger = logging.getLogger(__name__)

PROVIDER_LIMITS: dict[str, int | None] = {
    "gdrive": 750 * GIB,
    "drive": 750 * GIB,
    "onedrive": 100 * GIB,
    "s3": None,
    "b2": None,
    "dropbox": None,
}


class AccountStatus(str, Enum):
    ACTIVE = "active"
    EXHAUSTED = "exhausted"


@dataclass(slots=True)
class Account:
    account_id: str
    quota_limit: int | None
    reset_at: datetime
    quota_used: int = 0
    reserved: int = 0
    status: AccountStatus = AccountStatus.ACTIVE
    provider: str = "gdrive"
    name: str | None = None
    credential_path: Path | None = None

    @property
    def remaining(self) -> int | None:
        if self.quota_limit is None:
            return None
        return max(0, self.quota_limit - self.quota_used - self.reserved)

    def has_headroom(self, estimated_bytes: int) -> bool:
        if self.status is not AccountStatus.ACTIVE:
            return False
        if self.quota_limit is None:
            return True
        return self.quota_used + self.reserved + estimated_bytes <= self.quota_limit

    def to_payload(self) -> dict[str, Any]:
        return {
            "account_id": self.account_id,
            "name": self.name or self.account_id,
            "provider": self.provider,
            "quota_limit": self.quota_limit,
            "quota_used": self.quota_used,
            "reserved": self.reserved,
            "remaining": self.remaining,
            "status": self.status.value,
            "reset_at": iso(self.reset_at),
        }


class QuotaTracker:
    def __init__(
        self,
        *,
        reset_interval: timedelta = timedelta(hours=24),
        utc_offset_hours: int = 0,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        if reset_interval <= timedelta(0):
            raise ValueError("reset_interval must be positive")
        self._interval = reset_interval
        self._anchor = datetime(1970, 1, 1, tzinfo=timezone(timedelta(hours=utc_offset_hours)))
        self._clock = clock
        self._accounts: dict[str, Account] = {}
        self._order: list[str] = []
        self._cursor = 0
        self._lock = threading.Lock()

    @property
    def has_accounts(self) -> bool:
        with self._lock:
            return bool(self._order)

    def next_reset(self, now: datetime) -> datetime:
        now = _aware(now)
        elapsed = now - self._anchor
        cycles = elapsed // self._interval + 1
        return self._anchor + cycles * self._interval

    def add_account(
        self,
        quota_limit: int | None,
        *,
        account_id: str | None = None,
        provider: str = "gdrive",
        name: str | None = None,
        credential_path: Path | None = None,
    ) -> Account:
        account = Account(
            account_id=account_id or f"{provider}-{secrets.token_hex(4)}",
            quota_limit=quota_limit,
            reset_at=self.next_reset(self._clock()),
            provider=provider,
            name=name,
            credential_path=credential_path,
        )
        with self._lock:
            if account.account_id in self._accounts:
                raise ValueError(f"Duplicate account id: {account.account_id}")
            self._accounts[account.account_id] = account
            self._order.append(account.account_id)
        logger.info(
            "quota.account_added id=%s provider=%s limit=%s",
            account.account_id,
            provider,
            format_bytes(quota_limit),
        )
        return replace(account)

    def import_folder(self, path: Path, *, default_limit: int | None = None) -> int:
        """Register every service-account JSON file found directly in *path*."""

        if not path.is_dir():
            raise NotADirectoryError(str(path))
        count = 0
        for file_path in sorted(path.glob("*.json")):
            try:
                data = json.loads(file_path.read_text(encoding="utf-8"))
            except (OSError, json.JSONDecodeError) as exc:
                logger.warning("quota.import_skipped file=%s err=%s", file_path, exc)
                continue
            if not isinstance(data, dict):
                continue
            provider = detect_provider(data)
            limit = PROVIDER_LIMITS.get(provider) or default_limit
            self.add_account(
                limit,
                provider=provider,
                name=str(data.get("project_id") or file_path.stem),
                credential_path=file_path,
            )
            count += 1
        return count

    def get(self, account_id: str) -> Account:
        with self._lock:
            return replace(self._require(account_id))

    def accounts(self) -> list[Account]:
        with self._lock:
            return [replace(self._accounts[account_id]) for account_id in self._order]

    def select_account(self, estimated_bytes: int, *, now: datetime | None = None) -> Account:
        now = now or self._clock()
        with self._lock:
            if not self._order:
                raise QuotaExhaustedError("No accounts configured")
            total = len(self._order)
            for offset in range(total):
                index = (self._cursor + offset) % total
                account = self._accounts[self._order[index]]
                self._reset_locked(account, now)
                if account.has_headroom(estimated_bytes):
                    account.reserved += estimated_bytes
                    self._cursor = (index + 1) % total
                    return replace(account)
        raise QuotaExhaustedError(f"No account has {format_bytes(estimated_bytes)} of headroom")

    def attribute(self, account: Account | str, actual_bytes: int, *, reserved: int = 0) -> Account:
        if actual_bytes < 0:
            raise ValueError("actual_bytes must be non-negative")
        with self._lock:
            record = self._require(_account_id(account))
            record.reserved = max(0, record.reserved - reserved)
            record.quota_used += actual_bytes
            return replace(record)

    def release(self, account: Account | str, reserved: int) -> Account:
        with self._lock:
            record = self._require(_account_id(account))
            record.reserved = max(0, record.reserved - reserved)
            return replace(record)

    def reset_if_due(self, account: Account | str, now: datetime | None = None) -> bool:
        with self._lock:
            record = self._require(_account_id(account))
            return self._reset_locked(record, now or self._clock())

    def mark_exhausted(self, account: Account | str) -> None:
        with self._lock:
            record = self._require(_account_id(account))
            record.status = AccountStatus.EXHAUSTED
        logger.warning("quota.account_exhausted id=%s until=%s", record.account_id, iso(record.reset_at))

    def total_remaining(self, *, now: datetime | None = None) -> int | None:
        now = now or self._clock()
        total = 0
        with self._lock:
            for account_id in self._order:
                account = self._accounts[account_id]
                self._reset_locked(account, now)
                if account.status is not AccountStatus.ACTIVE:
                    continue
                remaining = account.remaining
                if remaining is None:
                    return None
                total += remaining
        return total

    def can_transfer(self, total_bytes: int) -> bool:
        remaining = self.total_remaining()
        return remaining is None or remaining >= total_bytes

    def status(self) -> list[dict[str, Any]]:
        with self._lock:
            return [self._accounts[account_id].to_payload() for account_id in self._order]

    def _require(self, account_id: str) -> Account:
        account = self._accounts.get(account_id)
        if account is None:
            raise KeyError(f"Unknown account: {account_id}")
        return account

    def _reset_locked(self, account: Account, now: datetime) -> bool:
        now = _aware(now)
        if now < account.reset_at:
            return False
        account.quota_used = 0
        account.reserved = 0
        account.status = AccountStatus.ACTIVE
        account.reset_at = self.next_reset(now)
        return True


def detect_provider(data: dict[str, Any]) -> str:
    if data.get("type") == "service_account" or "installed" in data or "web" in data:
        return "gdrive"
    if "access_key_id" in data:
        return "s3"
    if "accountId" in data and "applicationKey" in data:
        return "b2"
    return "unknown"


def _account_id(account: Account | str) -> str:
    return account if isinstance(account, str) else account.account_id


def _aware(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


__all__ = [
    "Account",
    "AccountStatus",
    "PROVIDER_LIMITS",
    "QuotaTracker",
    "detect_provider",
]
