from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path


@dataclass(frozen=True)
class RuntimeSettings:
    """Pipeline configuration, read from ``DOCCHAIN_*`` environment variables."""

    state_store_root: str = "state_store"
    max_rollback_depth: int = 3
    lock_ttl_seconds: int = 30
    idempotency_ttl_seconds: int = 3_600
    idempotency_sweep_seconds: int = 300
    dedup_grace_seconds: int = 30
    generator_model: str = "gpt-4o-mini"
    generator_timeout_seconds: int = 120
    generator_max_retries: int = 3
    review_gating: str = "off"

    @classmethod
    def from_env(cls) -> "RuntimeSettings":
        return cls(
            state_store_root=os.getenv("DOCCHAIN_STATE_STORE_ROOT", "state_store"),
            max_rollback_depth=_get_env_int("DOCCHAIN_MAX_ROLLBACK_DEPTH", default=3, minimum=0, maximum=6),
            lock_ttl_seconds=_get_env_int("DOCCHAIN_LOCK_TTL_SECONDS", default=30, minimum=1),
            idempotency_ttl_seconds=_get_env_int("DOCCHAIN_IDEMPOTENCY_TTL_SECONDS", default=3_600, minimum=1),
            idempotency_sweep_seconds=_get_env_int("DOCCHAIN_IDEMPOTENCY_SWEEP_SECONDS", default=300, minimum=1),
            dedup_grace_seconds=_get_env_int("DOCCHAIN_DEDUP_GRACE_SECONDS", default=30, minimum=0),
            generator_model=os.getenv("DOCCHAIN_GENERATOR_MODEL", "gpt-4o-mini"),
            generator_timeout_seconds=_get_env_int("DOCCHAIN_GENERATOR_TIMEOUT_SECONDS", default=120, minimum=1),
            generator_max_retries=_get_env_int("DOCCHAIN_GENERATOR_MAX_RETRIES", default=3, minimum=0, maximum=20),
            review_gating=os.getenv("DOCCHAIN_REVIEW_GATING", "off"),
        ).normalized()

    @property
    def review_gating_enabled(self) -> bool:
        return self.review_gating == "on"

    def normalized(self) -> "RuntimeSettings":
        """Return a checked copy with trimmed strings. Raises ValueError on bad values."""
        generator_model = self.generator_model.strip()
        if not generator_model:
            raise ValueError("DOCCHAIN_GENERATOR_MODEL must be non-empty")
        if not self.state_store_root.strip():
            raise ValueError("DOCCHAIN_STATE_STORE_ROOT must be non-empty")

        if self.max_rollback_depth < 0:
            raise ValueError(f"DOCCHAIN_MAX_ROLLBACK_DEPTH must be >= 0, got: {self.max_rollback_depth}")
        if self.lock_ttl_seconds < 1:
            raise ValueError(f"DOCCHAIN_LOCK_TTL_SECONDS must be >= 1, got: {self.lock_ttl_seconds}")
        if self.idempotency_sweep_seconds > self.idempotency_ttl_seconds:
            raise ValueError(
                "DOCCHAIN_IDEMPOTENCY_SWEEP_SECONDS must be <= DOCCHAIN_IDEMPOTENCY_TTL_SECONDS, "
                f"got: {self.idempotency_sweep_seconds} > {self.idempotency_ttl_seconds}"
            )

        review_gating = self.review_gating.strip().lower()
        if review_gating not in {"on", "off"}:
            raise ValueError("DOCCHAIN_REVIEW_GATING must be one of: on, off")
        return RuntimeSettings(
            state_store_root=self.state_store_root,
            max_rollback_depth=self.max_rollback_depth,
            lock_ttl_seconds=self.lock_ttl_seconds,
            idempotency_ttl_seconds=self.idempotency_ttl_seconds,
            idempotency_sweep_seconds=self.idempotency_sweep_seconds,
            dedup_grace_seconds=self.dedup_grace_seconds,
            generator_model=generator_model,
            generator_timeout_seconds=self.generator_timeout_seconds,
            generator_max_retries=self.generator_max_retries,
            review_gating=review_gating,
        )

    def state_store_path(self, repo_root: Path) -> Path:
        path = Path(self.state_store_root)
        return path if path.is_absolute() else repo_root / path


def _get_env_int(name: str, default: int, minimum: int, maximum: int = 10_000_000) -> int:
    """Integer environment variable within ``[minimum, maximum]``, or ``default`` when unset.

    Raises:
        ValueError: If the variable is set to a non-integer or an out-of-range value.
    """
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        parsed = int(raw)
    except ValueError as exc:
        raise ValueError(f"{name}={raw!r} is not an integer") from exc
    if not minimum <= parsed <= maximum:
        raise ValueError(f"{name}={parsed} is outside [{minimum}, {maximum}]")
    return parsed
