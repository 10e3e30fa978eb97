"""
Configuration settings for the backtest and search engine.

**Conceptual**: This module provides strongly-typed configuration objects that
load from environment variables (via .env files). All settings are validated
when loaded, so a typo in STRATEGY_LAB_MUTATION_RATE fails at startup rather
than halfway through a genetic search.

Settings only supply *defaults*. Every engine component also accepts its
parameters explicitly, and tests construct settings objects directly instead
of touching the environment.

This module uses python-dotenv to load .env files and dataclasses for type safety.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

# Try to load .env file if present (dev/local environments)
try:
    from dotenv import load_dotenv
    # Load .env from project root
    env_path = Path(__file__).parent.parent.parent / ".env"
    load_dotenv(dotenv_path=env_path)
except ImportError:
    # python-dotenv not installed; assume environment variables are set externally
    pass


_TRUE_VALUES = ("true", "1", "yes")


def _read_float(name: str, default: float) -> float:
    raw = os.getenv(name, str(default))
    try:
        return float(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number, got: {raw}")


def _read_int(name: str, default: int) -> int:
    raw = os.getenv(name, str(default))
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got: {raw}")


def _read_optional_int(name: str) -> Optional[int]:
    raw = os.getenv(name, "").strip()
    if not raw:
        return None
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got: {raw}")


@dataclass(frozen=True)
class AnalyticsSettings:
    """
    Defaults for the performance analyzer.

    Attributes:
        risk_free_rate: Annual risk-free rate used by the Sharpe ratio. The
                        daily rate is risk_free_rate / 365.
        var_confidence: Confidence level for Value-at-Risk and Expected
                        Shortfall (e.g., 0.95).
        win_rate_pairing: Trade pairing used by win rate: "adjacent"
                          (compatible default) or "fifo".
    """
    risk_free_rate: float = 0.02
    var_confidence: float = 0.95
    win_rate_pairing: str = "adjacent"

    def __post_init__(self):
        """Validate settings after initialization."""
        if not 0.0 < self.var_confidence < 1.0:
            raise ValueError(
                f"STRATEGY_LAB_VAR_CONFIDENCE must be in (0, 1), got {self.var_confidence}"
            )
        if self.win_rate_pairing not in ("adjacent", "fifo"):
            raise ValueError(
                f"STRATEGY_LAB_WIN_RATE_PAIRING must be 'adjacent' or 'fifo', "
                f"got '{self.win_rate_pairing}'"
            )

    @classmethod
    def from_env(cls) -> "AnalyticsSettings":
        """
        Load analytics settings from environment variables.

        **Environment variables** (all optional):
          - STRATEGY_LAB_RISK_FREE_RATE (default 0.02)
          - STRATEGY_LAB_VAR_CONFIDENCE (default 0.95)
          - STRATEGY_LAB_WIN_RATE_PAIRING (default "adjacent")
        """
        return cls(
            risk_free_rate=_read_float("STRATEGY_LAB_RISK_FREE_RATE", 0.02),
            var_confidence=_read_float("STRATEGY_LAB_VAR_CONFIDENCE", 0.95),
            win_rate_pairing=os.getenv("STRATEGY_LAB_WIN_RATE_PAIRING", "adjacent").strip().lower(),
        )


@dataclass(frozen=True)
class SearchSettings:
    """
    Defaults for the parameter search engine.

    Attributes:
        max_concurrency: Upper bound on candidate evaluations in flight.
        seed: Seed for the search RandomSource. None = fresh entropy
              (non-reproducible).
        population_size: Genetic population size.
        generations: Genetic generation count.
        mutation_rate: Per-dimension mutation probability.
        elite_size: Individuals carried unchanged into the next generation.
        iterations: Iterative random-search budget.
    """
    max_concurrency: int = 4
    seed: Optional[int] = None
    population_size: int = 50
    generations: int = 20
    mutation_rate: float = 0.1
    elite_size: int = 5
    iterations: int = 50

    def __post_init__(self):
        """Validate settings after initialization."""
        if self.max_concurrency < 1:
            raise ValueError(f"STRATEGY_LAB_MAX_CONCURRENCY must be >= 1, got {self.max_concurrency}")
        if self.population_size < 1:
            raise ValueError(f"STRATEGY_LAB_POPULATION_SIZE must be >= 1, got {self.population_size}")
        if self.generations < 1:
            raise ValueError(f"STRATEGY_LAB_GENERATIONS must be >= 1, got {self.generations}")
        if not 0.0 <= self.mutation_rate <= 1.0:
            raise ValueError(f"STRATEGY_LAB_MUTATION_RATE must be in [0, 1], got {self.mutation_rate}")
        if not 0 <= self.elite_size <= self.population_size:
            raise ValueError(
                f"STRATEGY_LAB_ELITE_SIZE must be in [0, population_size], got {self.elite_size}"
            )
        if self.iterations < 1:
            raise ValueError(f"STRATEGY_LAB_ITERATIONS must be >= 1, got {self.iterations}")

    @classmethod
    def from_env(cls) -> "SearchSettings":
        """
        Load search settings from environment variables.

        **Environment variables** (all optional):
          - STRATEGY_LAB_MAX_CONCURRENCY (default 4)
          - STRATEGY_LAB_SEED (default unset)
          - STRATEGY_LAB_POPULATION_SIZE (default 50)
          - STRATEGY_LAB_GENERATIONS (default 20)
          - STRATEGY_LAB_MUTATION_RATE (default 0.1)
          - STRATEGY_LAB_ELITE_SIZE (default 5)
          - STRATEGY_LAB_ITERATIONS (default 50)

        Raises:
            ValueError: If a variable is set but malformed or out of range.
        """
        return cls(
            max_concurrency=_read_int("STRATEGY_LAB_MAX_CONCURRENCY", 4),
            seed=_read_optional_int("STRATEGY_LAB_SEED"),
            population_size=_read_int("STRATEGY_LAB_POPULATION_SIZE", 50),
            generations=_read_int("STRATEGY_LAB_GENERATIONS", 20),
            mutation_rate=_read_float("STRATEGY_LAB_MUTATION_RATE", 0.1),
            elite_size=_read_int("STRATEGY_LAB_ELITE_SIZE", 5),
            iterations=_read_int("STRATEGY_LAB_ITERATIONS", 50),
        )


@dataclass(frozen=True)
class LoggingSettings:
    """Log level for actions (STRATEGY_LAB_LOG_LEVEL, default INFO)."""
    level: str = "INFO"

    @classmethod
    def from_env(cls) -> "LoggingSettings":
        return cls(level=os.getenv("STRATEGY_LAB_LOG_LEVEL", "INFO").strip().upper())


@dataclass(frozen=True)
class Settings:
    """
    Global settings for the engine.

    **Usage pattern**:
      ```python
      from strategy_lab.config.settings import get_settings

      settings = get_settings()
      settings.search.max_concurrency
      ```

    Attributes:
        analytics: Performance analyzer defaults.
        search: Parameter search defaults.
        logging: Log level for entry points.
    """
    analytics: AnalyticsSettings = field(default_factory=AnalyticsSettings)
    search: SearchSettings = field(default_factory=SearchSettings)
    logging: LoggingSettings = field(default_factory=LoggingSettings)

    @classmethod
    def from_env(cls) -> "Settings":
        """
        Load all settings sections from environment variables.

        Raises:
            ValueError: If any section fails validation.
        """
        return cls(
            analytics=AnalyticsSettings.from_env(),
            search=SearchSettings.from_env(),
            logging=LoggingSettings.from_env(),
        )


# Lazily loaded singleton. Tests build Settings(...) directly or call reset_settings().
_default_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """
    Get the global settings singleton.

    Settings are loaded from the environment on first call, then cached.

    Returns:
        Global Settings singleton.

    Raises:
        ValueError: If an environment variable is malformed.
    """
    global _default_settings

    if _default_settings is None:
        _default_settings = Settings.from_env()

    return _default_settings


def reset_settings():
    """
    Reset the global settings singleton (for testing).

    **Testing pattern**:
      ```python
      def test_something(monkeypatch):
          reset_settings()
          monkeypatch.setenv("STRATEGY_LAB_SEED", "7")
          assert get_settings().search.seed == 7
      ```
    """
    global _default_settings
    _default_settings = None
