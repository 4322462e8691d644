from .page_model import (
    CrawlPage,
    CrawlStatus,
    FAILED_CONTENT_TYPE,
    FETCHING_CONTENT_TYPE,
    FINAL_STATUSES,
    IN_FLIGHT_STATUSES,
)

__all__ = [
    "CrawlPage",
    "CrawlStatus",
    "FAILED_CONTENT_TYPE",
    "FETCHING_CONTENT_TYPE",
    "FINAL_STATUSES",
    "IN_FLIGHT_STATUSES",
]
