from __future__ import annotations

from ..models import Site
from .base import SiteAdapter
from .rfa import (
    FIRST_MONTH,
    ArcSiteAdapter,
    BurmeseAdapter,
    CantoneseAdapter,
    EnglishAdapter,
    KhmerAdapter,
    KoreanAdapter,
    LaoAdapter,
    MandarinAdapter,
    TibetanAdapter,
    UyghurAdapter,
    VietnameseAdapter,
)

ADAPTERS: dict[Site, type[ArcSiteAdapter]] = {
    Site.ENGLISH: EnglishAdapter,
    Site.MANDARIN: MandarinAdapter,
    Site.CANTONESE: CantoneseAdapter,
    Site.BURMESE: BurmeseAdapter,
    Site.KOREAN: KoreanAdapter,
    Site.LAO: LaoAdapter,
    Site.KHMER: KhmerAdapter,
    Site.TIBETAN: TibetanAdapter,
    Site.UYGHUR: UyghurAdapter,
    Site.VIETNAMESE: VietnameseAdapter,
}


def adapter_for(
    site: Site,
    *,
    start_month: tuple[int, int] | None = None,
    end_month: tuple[int, int] | None = None,
) -> SiteAdapter:
    cls = ADAPTERS[site]
    return cls(start_month=start_month or FIRST_MONTH, end_month=end_month)


__all__ = ["ADAPTERS", "SiteAdapter", "adapter_for"]
