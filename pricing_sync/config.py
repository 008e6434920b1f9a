"""Core application configuration & tunable sync rules.

All knobs that shape the pricing sync engine (batch sizing, time budget, rate
limits, circuit thresholds, backoff curves, retry policy, staleness, reaper
thresholds) are centralized here so they can be adjusted without diving into
service logic. Every value can be overridden through an environment variable;
tests monkeypatch the dicts directly or pass explicit values to constructors.
"""
from __future__ import annotations

import os


def _env_int(name: str, default: int) -> int:
	raw = os.getenv(name)
	return int(raw) if raw and raw.strip() else default


def _env_float(name: str, default: float) -> float:
	raw = os.getenv(name)
	return float(raw) if raw and raw.strip() else default


# ------------------------------- Upstream API ------------------------------ #
JUSTTCG_SETTINGS: dict[str, str | float | None] = {
	"api_key": os.getenv("JUSTTCG_API_KEY") or None,
	"base_url": os.getenv("JTCG_BASE", "https://api.justtcg.com/v1"),
	"request_timeout_seconds": _env_float("JUSTTCG_REQUEST_TIMEOUT", 30.0),
	"user_agent": "tcg-pricing-sync/1.0",
}

# Games the upstream catalog knows about. Anything else is rejected at enqueue.
SUPPORTED_GAMES: frozenset[str] = frozenset({
	"pokemon",
	"pokemon-japan",
	"magic-the-gathering",
	"yugioh",
	"lorcana-tcg",
	"one-piece",
	"digimon",
	"union-arena",
})

# ------------------------------- Rate Limit -------------------------------- #
RATE_LIMIT: dict[str, int] = {
	"limit": _env_int("JUSTTCG_RATE_LIMIT", 500),          # requests per window
	"window_seconds": _env_int("JUSTTCG_RATE_WINDOW", 60),
}

# ----------------------------- Circuit Breaker ----------------------------- #
# Defaults for a freshly created per-game breaker row.
CIRCUIT_BREAKER: dict[str, int] = {
	"failure_threshold": _env_int("BREAKER_FAILURE_THRESHOLD", 10),
	"recovery_timeout_seconds": _env_int("BREAKER_RECOVERY_TIMEOUT", 30 * 60),
}

# --------------------------------- Backoff --------------------------------- #
# Upstream HTTP retries (429 and transient errors): 1s, 2s, 4s capped at 5s.
BACKOFF_POLICY: dict[str, int | float] = {
	"base_seconds": 1,
	"factor": 2,
	"max_seconds": 5,
	"max_attempts": 3,
	"jitter_pct": 0.0,
}

# ------------------------------- Retry Policy ------------------------------ #
RETRY_POLICY: dict[str, dict[str, int | float]] = {
	# Per-variant retry ledger
	"variant": {
		"max_retries": _env_int("VARIANT_MAX_RETRIES", 5),
		"base_delay_seconds": 300,
		"factor": 2,
		"max_delay_seconds": 6 * 3600,
	},
	# Whole-job requeue after a non-fatal error run
	"job": {
		"max_retries": _env_int("JOB_MAX_RETRIES", 3),
		"base_delay_seconds": 60,
		"factor": 2,
		"max_delay_seconds": 30 * 60,
	},
}

# --------------------------------- Queue ----------------------------------- #
QUEUE_SETTINGS: dict[str, int | bool] = {
	"default_priority": 0,          # higher runs first
	"scheduled_priority": 10,       # cron-style triggers
	"requeue_on_ceiling": True,     # continue a preflight_ceiling run next invocation
}

# ------------------------------ Batch Processor ---------------------------- #
PROCESSOR_SETTINGS: dict[str, int | float] = {
	"batch_size": _env_int("PRICING_BATCH_SIZE", 50),
	# Wall-clock budget per invocation, kept below the host's hard ceiling.
	"time_budget_seconds": _env_float("PRICING_TIME_BUDGET", 130.0),
	"inter_batch_delay_seconds": _env_float("PRICING_INTER_BATCH_DELAY", 0.125),
	"max_batches_per_run": _env_int("PRICING_MAX_BATCHES", 470),
	"staleness_window_minutes": _env_int("PRICING_STALENESS_MINUTES", 60),
}

# ---------------------------------- Reaper --------------------------------- #
REAPER_SETTINGS: dict[str, int] = {
	"stuck_job_max_minutes": _env_int("STUCK_JOB_MAX_MINUTES", 60),
	"auto_cleanup_max_minutes": 120,
	"run_retention_days": 7,
}

DATABASE_URL: str = os.getenv("DATABASE_URL", "sqlite+pysqlite:///./pricing_sync.db")

__all__ = [
	"JUSTTCG_SETTINGS",
	"SUPPORTED_GAMES",
	"RATE_LIMIT",
	"CIRCUIT_BREAKER",
	"BACKOFF_POLICY",
	"RETRY_POLICY",
	"QUEUE_SETTINGS",
	"PROCESSOR_SETTINGS",
	"REAPER_SETTINGS",
	"DATABASE_URL",
]
