import codecs
import re
from typing import Callable, Dict, Optional

import httpx
from loguru import logger

from scraper.fetch.protocol import FetchResponse
from scraper.storage.models.page_model import FAILED_CONTENT_TYPE
from scraper.utils.url_utils import absolute_url


CHARSET_RE = re.compile(r"charset=([^;]+)", re.IGNORECASE)
DEFAULT_CHARSET = "utf-8"
DEFAULT_BINARY_TYPE = "application/octet-stream"

Decoder = Callable[[bytes], str]


class DecoderCache:
    """Charset name -> decoder, built on first use.

    One cache per worker unit, so no locking is needed.
    """

    def __init__(self) -> None:
        self._decoders: Dict[str, Decoder] = {}

    def __len__(self) -> int:
        return len(self._decoders)

    def __contains__(self, charset: str) -> bool:
        return charset in self._decoders

    @staticmethod
    def charset_of(content_type: str) -> str:
        match = CHARSET_RE.search(content_type or "")
        if not match:
            return DEFAULT_CHARSET
        return match.group(1).strip().strip("\"'").lower() or DEFAULT_CHARSET

    def decoder_for(self, content_type: str) -> Decoder:
        charset = self.charset_of(content_type)
        decoder = self._decoders.get(charset)
        if decoder is None:
            decoder = self._build(charset)
            self._decoders[charset] = decoder
        return decoder

    def decode(self, data: bytes, content_type: str) -> str:
        return self.decoder_for(content_type)(data)

    @staticmethod
    def _build(charset: str) -> Decoder:
        try:
            decode = codecs.getdecoder(charset)
        except LookupError:
            logger.warning(f"Unknown charset '{charset}', decoding as {DEFAULT_CHARSET}")
            decode = codecs.getdecoder(DEFAULT_CHARSET)

        return lambda data: decode(data, "replace")[0]


class ResponseProcessor:
    """Fetch an origin-relative URL and turn the reply into a FetchResponse."""

    def __init__(self, origin: str, client: httpx.AsyncClient, decoders: Optional[DecoderCache] = None) -> None:
        self.origin = origin
        self.client = client
        self.decoders = decoders if decoders is not None else DecoderCache()

    async def fetch(self, url: str) -> FetchResponse:
        resp = await self.client.get(absolute_url(self.origin, url))

        redirected = bool(resp.history)
        base = {
            "url": url,
            "status": resp.status_code,
            "final_url": str(resp.url) if redirected else None,
            "original_url": url if redirected else None,
            "reason": resp.reason_phrase,
        }

        if not resp.is_success:
            return FetchResponse(
                content_type=FAILED_CONTENT_TYPE,
                body=resp.reason_phrase,
                **base,
            )

        content_type = resp.headers.get("Content-Type") or ""

        if not content_type.lower().startswith("text/"):
            return FetchResponse(
                content_type=content_type or DEFAULT_BINARY_TYPE,
                body=resp.content,
                **base,
            )

        return FetchResponse(
            content_type=content_type.split(";")[0].strip().lower(),
            body=self.decoders.decode(resp.content, content_type),
            **base,
        )
