from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path


_TRUE_VALUES = frozenset({"1", "true", "yes", "on"})
_FALSE_VALUES = frozenset({"0", "false", "no", "off", ""})


@dataclass(frozen=True)
class RuntimeSettings:
    """Runtime settings loaded from environment with fail-fast validation."""

    store_root: str = "state_store"
    gateway_timeout_seconds: int = 180
    model_name: str = "gpt-4o"
    use_llm: bool = False
    context_char_limit: int = 420

    @classmethod
    def from_env(cls) -> "RuntimeSettings":
        return cls(
            store_root=os.getenv("BLUEPRINT_STORE_ROOT", "state_store"),
            gateway_timeout_seconds=_get_env_int(
                "BLUEPRINT_GATEWAY_TIMEOUT_SECONDS", default=180, minimum=1, maximum=3_600
            ),
            model_name=os.getenv("BLUEPRINT_MODEL", "gpt-4o"),
            use_llm=_get_env_bool("BLUEPRINT_USE_LLM", default=False),
            context_char_limit=_get_env_int(
                "BLUEPRINT_CONTEXT_CHAR_LIMIT", default=420, minimum=40, maximum=10_000
            ),
        ).normalized()

    def normalized(self) -> "RuntimeSettings":
        """Validate and normalize all fields. Raises ValueError on invalid configuration."""
        model_name = self.model_name.strip()
        if not model_name:
            raise ValueError("BLUEPRINT_MODEL must be non-empty")
        if not self.store_root.strip():
            raise ValueError("BLUEPRINT_STORE_ROOT must be non-empty")
        if self.gateway_timeout_seconds < 1:
            raise ValueError(
                f"BLUEPRINT_GATEWAY_TIMEOUT_SECONDS must be >= 1, got: {self.gateway_timeout_seconds}"
            )
        if self.context_char_limit < 40:
            raise ValueError(
                f"BLUEPRINT_CONTEXT_CHAR_LIMIT must be >= 40, got: {self.context_char_limit}"
            )
        return RuntimeSettings(
            store_root=self.store_root.strip(),
            gateway_timeout_seconds=self.gateway_timeout_seconds,
            model_name=model_name,
            use_llm=self.use_llm,
            context_char_limit=self.context_char_limit,
        )

    def store_path(self, repo_root: Path) -> Path:
        path = Path(self.store_root).expanduser()
        return path if path.is_absolute() else repo_root / path


def _get_env_int(name: str, default: int, minimum: int, maximum: int = 10_000_000) -> int:
    """Parse an integer from an environment variable with bounds checking.

    Args:
        name: Environment variable name.
        default: Value to return if the variable is unset.
        minimum: Inclusive lower bound.
        maximum: Inclusive upper bound.

    Returns:
        The parsed integer, guaranteed to be within [minimum, maximum].

    Raises:
        ValueError: If the value is not an integer or is outside bounds.
    """
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        parsed = int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer, got: {raw!r}") from exc
    if parsed < minimum:
        raise ValueError(f"{name} must be >= {minimum}, got: {parsed}")
    if parsed > maximum:
        raise ValueError(f"{name} must be <= {maximum}, got: {parsed}")
    return parsed


def _get_env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    lowered = raw.strip().lower()
    if lowered in _TRUE_VALUES:
        return True
    if lowered in _FALSE_VALUES:
        return False
    raise ValueError(f"{name} must be a boolean flag (1/0/true/false), got: {raw!r}")
