from enum import IntEnum

from tortoise import fields, models


class CrawlStatus(IntEnum):
    """Crawl state of a page. OK and REDIRECT reuse the HTTP codes."""

    FRESH = 0
    PARSED = 2
    FETCHING = 6
    PARSING = 7
    FETCH_ERROR = 43
    NO_RESPONSE = 44
    PARSE_ERROR = 45
    OK = 200
    REDIRECT = 302


IN_FLIGHT_STATUSES = (CrawlStatus.FETCHING, CrawlStatus.PARSING)

# final regardless of content type; OK is final only for content that is never parsed
FINAL_STATUSES = (
    CrawlStatus.PARSED,
    CrawlStatus.FETCH_ERROR,
    CrawlStatus.NO_RESPONSE,
    CrawlStatus.PARSE_ERROR,
    CrawlStatus.REDIRECT,
)

FETCHING_CONTENT_TYPE = "?"
FAILED_CONTENT_TYPE = "!"


class CrawlPage(models.Model):
    """
    One row per canonical URL. A non-null queue_priority means the page is
    in the frontier.
    """
    id = fields.IntField(pk=True)
    url = fields.CharField(max_length=2048, unique=True)
    status = fields.IntEnumField(CrawlStatus, default=CrawlStatus.FRESH, index=True)
    queue_priority = fields.IntField(null=True, index=True)
    date = fields.DatetimeField(null=True, index=True)
    referrer = fields.CharField(max_length=2048, null=True)
    tag = fields.CharField(max_length=255, null=True, index=True)
    content_type = fields.CharField(max_length=255, null=True)
    body = fields.TextField(null=True)
    raw_body = fields.BinaryField(null=True)
    original_url = fields.CharField(max_length=2048, null=True)
    redirect_target_url = fields.CharField(max_length=2048, null=True)

    class Meta:
        table = "crawl_pages"
        indexes = (("status", "content_type"),)

    def __str__(self):
        return f"{self.url} [{self.status.name}]"
