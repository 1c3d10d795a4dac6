import logging

import httpx

from journey_engine.models.validation import LinkCheck
from journey_engine.services.validation import extract_links

logger = logging.getLogger(__name__)


class LinkChecker:
    """Reachability check for every href in a piece of HTML.

    Links that are not http(s) are reported as internal and never fetched.
    External links get a HEAD request; 2xx and 3xx count as reachable.
    """

    def __init__(
        self,
        timeout: float = 5.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.timeout = timeout
        self._transport = transport

    async def check(self, html: str) -> list[LinkCheck]:
        urls = extract_links(html)
        if not urls:
            return []

        results: list[LinkCheck] = []
        async with httpx.AsyncClient(
            timeout=self.timeout,
            transport=self._transport,
            follow_redirects=True,
        ) as client:
            for url in urls:
                if not url.startswith("http"):
                    results.append(LinkCheck(url=url, valid=True, type="internal"))
                    continue
                try:
                    response = await client.head(url)
                except (httpx.HTTPError, httpx.InvalidURL) as exc:
                    logger.info("Link unreachable", extra={"url": url, "error": str(exc)})
                    results.append(
                        LinkCheck(url=url, valid=False, type="external", error=str(exc) or exc.__class__.__name__)
                    )
                    continue
                results.append(
                    LinkCheck(
                        url=url,
                        valid=200 <= response.status_code < 400,
                        type="external",
                        status=response.status_code,
                    )
                )
        return results
