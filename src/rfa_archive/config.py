"""Configuration handed to the crawl core by the CLI (or a caller)."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path

from .models import Site
from .sites.rfa import FIRST_MONTH


@dataclass(frozen=True)
class SiteLimits:
    """Politeness and shape limits for one site's crawl."""

    concurrency: int = 4
    min_delay_s: float = 0.5
    max_depth: int | None = None


@dataclass
class ArchiveConfig:
    """Top-level settings for one archive run."""

    out_dir: Path
    sites: tuple[Site, ...] = tuple(Site)
    proxy: str | None = None
    timeout_s: float = 30
    max_retries: int = 4
    backoff_base_s: float = 1.0
    checkpoint_interval_s: float = 60.0
    start_month: tuple[int, int] = FIRST_MONTH
    end_month: tuple[int, int] | None = None
    default_limits: SiteLimits = field(default_factory=SiteLimits)
    site_limits: dict[Site, SiteLimits] = field(default_factory=dict)
    resume: bool = True
    retry_failed: bool = True
    show_progress: bool = True

    def limits_for(self, site: Site) -> SiteLimits:
        return self.site_limits.get(site, self.default_limits)

    @property
    def db_path(self) -> Path:
        return self.out_dir / "archive.db"

    @property
    def state_dir(self) -> Path:
        return self.out_dir / ".state"
