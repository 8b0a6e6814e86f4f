"""
CardDAV client for reading and writing address books.

Implements only what synchronization needs:
- Incremental listing with the sync-collection REPORT (RFC 6578), falling
  back to a PROPFIND listing when the server has no sync support
- Batched card retrieval with the addressbook-multiget REPORT (RFC 6352)
- Single card retrieval with GET
- Conditional card upload with PUT (If-Match / If-None-Match)

HTTP failures are raised as RemoteCallError with retryability set, so the
RemoteCallGuard can retry them.
"""

import logging
import xml.etree.ElementTree as ET  # nosec B405
from dataclasses import dataclass, field
from typing import Optional
from urllib.parse import quote, unquote, urljoin, urlparse

import requests
from requests.auth import HTTPBasicAuth

from carddav_sync import __version__
from carddav_sync.api.errors import (
    MalformedResponseError,
    PreconditionFailedError,
    RemoteCallError,
    SyncTokenExpiredError,
)
from carddav_sync.config.settings import ConnectionConfig

logger = logging.getLogger(__name__)

DAV_NS = "DAV:"
CARDDAV_NS = "urn:ietf:params:xml:ns:carddav"

DEFAULT_TIMEOUT = 30.0

USER_AGENT = f"carddav-sync/{__version__}"

SYNC_COLLECTION_BODY = """<?xml version="1.0" encoding="utf-8"?>
<d:sync-collection xmlns:d="DAV:">
  <d:sync-token>{token}</d:sync-token>
  <d:sync-level>1</d:sync-level>
  <d:prop>
    <d:getetag/>
    <d:getcontenttype/>
  </d:prop>
</d:sync-collection>
"""

PROPFIND_BODY = """<?xml version="1.0" encoding="utf-8"?>
<d:propfind xmlns:d="DAV:">
  <d:prop>
    <d:getetag/>
    <d:getcontenttype/>
    <d:resourcetype/>
    <d:sync-token/>
  </d:prop>
</d:propfind>
"""

MULTIGET_BODY = """<?xml version="1.0" encoding="utf-8"?>
<c:addressbook-multiget xmlns:d="DAV:" xmlns:c="urn:ietf:params:xml:ns:carddav">
  <d:prop>
    <d:getetag/>
    <c:address-data/>
  </d:prop>
{hrefs}
</c:addressbook-multiget>
"""


def _dav(tag: str) -> str:
    return f"{{{DAV_NS}}}{tag}"


def _xml_escape(value: str) -> str:
    return (
        value.replace("&", "&amp;")
        .replace("<", "&lt;")
        .replace(">", "&gt;")
        .replace('"', "&quot;")
    )


@dataclass(frozen=True)
class RemoteCard:
    """
    A card on the server.

    Attributes:
        href: Server path of the card
        etag: Version tag, if the server reported one
        text: vCard text, when it was part of the response
    """

    href: str
    etag: Optional[str] = None
    text: Optional[str] = None


@dataclass
class ChangeSet:
    """
    Result of list_changed().

    Attributes:
        cards: Cards added or changed since the token (all cards when full)
        deleted_hrefs: Cards removed since the token
        sync_token: Token to pass next time, if the server supports it
        full: True when this is a complete listing rather than a delta
    """

    cards: list[RemoteCard] = field(default_factory=list)
    deleted_hrefs: list[str] = field(default_factory=list)
    sync_token: Optional[str] = None
    full: bool = False


class CardDAVClient:
    """
    Minimal CardDAV client bound to one address book collection.

    Usage:
        client = CardDAVClient.from_config(connection_config)
        changes = client.list_changed(sync_token=None)
        cards = client.fetch_many([c.href for c in changes.cards])
    """

    def __init__(
        self,
        address_book_url: str,
        username: str,
        password: str,
        verify_ssl: bool = True,
        session: Optional[requests.Session] = None,
    ):
        """
        Initialize the client.

        Args:
            address_book_url: URL of the address book collection
            username: HTTP basic auth user
            password: HTTP basic auth password
            verify_ssl: Verify TLS certificates
            session: Optional pre-configured session (used by tests)
        """
        if not address_book_url.endswith("/"):
            address_book_url += "/"
        self.address_book_url = address_book_url
        self.session = session or requests.Session()
        self.session.auth = HTTPBasicAuth(username, password)
        self.session.verify = verify_ssl
        self.session.headers.update({"User-Agent": USER_AGENT})

    @classmethod
    def from_config(cls, config: ConnectionConfig) -> "CardDAVClient":
        return cls(
            address_book_url=config.collection_url,
            username=config.username,
            password=config.resolve_password(),
            verify_ssl=config.verify_ssl,
        )

    def close(self) -> None:
        self.session.close()

    # =========================================================================
    # HTTP plumbing
    # =========================================================================

    def _request(
        self,
        method: str,
        url: str,
        body: Optional[str] = None,
        depth: Optional[str] = None,
        timeout: Optional[float] = None,
        headers: Optional[dict[str, str]] = None,
        content_type: str = "application/xml; charset=utf-8",
    ) -> requests.Response:
        headers = dict(headers or {})
        if body is not None:
            headers["Content-Type"] = content_type
        if depth is not None:
            headers["Depth"] = depth

        try:
            response = self.session.request(
                method,
                url,
                data=body.encode("utf-8") if body is not None else None,
                headers=headers,
                timeout=timeout or DEFAULT_TIMEOUT,
            )
        except requests.Timeout as e:
            raise RemoteCallError(f"{method} {url} timed out", retryable=True) from e
        except requests.ConnectionError as e:
            raise RemoteCallError(
                f"{method} {url} failed: connection error", retryable=True
            ) from e
        except requests.RequestException as e:
            raise RemoteCallError(f"{method} {url} failed: {e}") from e

        if response.status_code >= 400:
            retry_after: Optional[float] = None
            header = response.headers.get("Retry-After")
            if header and header.isdigit():
                retry_after = float(header)
            message = f"{method} {url} returned HTTP {response.status_code}"
            if response.status_code == 412:
                raise PreconditionFailedError(message, status_code=412)
            raise RemoteCallError.from_status(
                message, response.status_code, retry_after=retry_after
            )
        return response

    def _parse_multistatus(self, response: requests.Response) -> ET.Element:
        try:
            return ET.fromstring(response.content)  # nosec B314
        except ET.ParseError as e:
            raise MalformedResponseError(f"Invalid XML from server: {e}") from e

    def _is_collection_href(self, href: str) -> bool:
        own_path = unquote(urlparse(self.address_book_url).path).rstrip("/")
        return unquote(urlparse(urljoin(self.address_book_url, href)).path).rstrip(
            "/"
        ) == own_path

    def _read_responses(
        self, root: ET.Element
    ) -> tuple[list[RemoteCard], list[str]]:
        cards: list[RemoteCard] = []
        deleted: list[str] = []
        for response in root.findall(_dav("response")):
            href = (response.findtext(_dav("href")) or "").strip()
            if not href or self._is_collection_href(href):
                continue

            # sync-collection reports removals as a bare 404 status
            status = response.findtext(_dav("status")) or ""
            if " 404 " in f"{status} ":
                deleted.append(href)
                continue

            etag: Optional[str] = None
            text: Optional[str] = None
            is_collection = False
            content_type = ""
            for propstat in response.findall(_dav("propstat")):
                propstat_status = propstat.findtext(_dav("status")) or ""
                if " 200 " not in f"{propstat_status} ":
                    continue
                prop = propstat.find(_dav("prop"))
                if prop is None:
                    continue
                etag = prop.findtext(_dav("getetag")) or etag
                text = prop.findtext(f"{{{CARDDAV_NS}}}address-data") or text
                content_type = prop.findtext(_dav("getcontenttype")) or content_type
                resource_type = prop.find(_dav("resourcetype"))
                if resource_type is not None and resource_type.find(_dav("collection")) is not None:
                    is_collection = True

            if is_collection:
                continue
            if content_type and "vcard" not in content_type.lower() and not href.endswith(".vcf"):
                continue
            cards.append(RemoteCard(href=href, etag=etag.strip() if etag else None, text=text))
        return cards, deleted

    # =========================================================================
    # Operations
    # =========================================================================

    def list_changed(
        self, sync_token: Optional[str] = None, timeout: Optional[float] = None
    ) -> ChangeSet:
        """
        List cards changed since sync_token.

        Without a token every card is listed. Servers without sync-collection
        support are listed with PROPFIND.

        Args:
            sync_token: Token from the previous listing
            timeout: Per-request timeout in seconds

        Returns:
            ChangeSet of hrefs and etags (texts are fetched separately)

        Raises:
            SyncTokenExpiredError: If the server no longer accepts sync_token
            RemoteCallError: For other request failures
        """
        body = SYNC_COLLECTION_BODY.format(token=_xml_escape(sync_token or ""))
        try:
            response = self._request(
                "REPORT", self.address_book_url, body=body, depth="0", timeout=timeout
            )
        except RemoteCallError as e:
            if sync_token and e.status_code in (403, 409, 410):
                raise SyncTokenExpiredError(
                    "Sync token expired. A full listing is required.",
                    status_code=e.status_code,
                ) from e
            if not sync_token and e.status_code in (400, 403, 405, 501):
                logger.debug(
                    f"sync-collection not supported ({e.status_code}), using PROPFIND"
                )
                return self._list_all(timeout)
            raise

        root = self._parse_multistatus(response)
        cards, deleted = self._read_responses(root)
        new_token = root.findtext(_dav("sync-token"))
        logger.debug(
            f"sync-collection returned {len(cards)} changed and {len(deleted)} "
            f"deleted cards"
        )
        return ChangeSet(
            cards=cards,
            deleted_hrefs=deleted,
            sync_token=new_token.strip() if new_token else None,
            full=not sync_token,
        )

    def _list_all(self, timeout: Optional[float]) -> ChangeSet:
        response = self._request(
            "PROPFIND", self.address_book_url, body=PROPFIND_BODY, depth="1", timeout=timeout
        )
        root = self._parse_multistatus(response)
        cards, _ = self._read_responses(root)
        return ChangeSet(cards=cards, full=True)

    def fetch_many(
        self, hrefs: list[str], timeout: Optional[float] = None
    ) -> list[RemoteCard]:
        """
        Fetch several cards with one addressbook-multiget REPORT.

        Cards the server omits or returns without data are fetched
        individually with GET.

        Args:
            hrefs: Card paths as returned by list_changed()
            timeout: Per-request timeout in seconds

        Returns:
            Cards with text, in the order of hrefs
        """
        if not hrefs:
            return []

        href_xml = "\n".join(f"  <d:href>{_xml_escape(href)}</d:href>" for href in hrefs)
        response = self._request(
            "REPORT",
            self.address_book_url,
            body=MULTIGET_BODY.format(hrefs=href_xml),
            depth="1",
            timeout=timeout,
        )
        cards, _ = self._read_responses(self._parse_multistatus(response))

        by_path = {unquote(card.href): card for card in cards if card.text}
        result: list[RemoteCard] = []
        for href in hrefs:
            card = by_path.get(unquote(href))
            if card is None:
                logger.debug(f"multiget returned no data for {href}, using GET")
                card = RemoteCard(href=href, text=self.fetch_text(href, timeout=timeout))
            result.append(RemoteCard(href=href, etag=card.etag, text=card.text))
        return result

    def fetch_text(self, href: str, timeout: Optional[float] = None) -> str:
        """
        Fetch one card's vCard text with GET.

        Args:
            href: Card path or absolute URL

        Returns:
            The vCard text
        """
        url = urljoin(self.address_book_url, href)
        response = self._request("GET", url, timeout=timeout)
        response.encoding = response.encoding or "utf-8"
        return response.text

    def href_for(self, uid: str) -> str:
        """Server path for a new card named after its uid."""
        path = urlparse(self.address_book_url).path
        return f"{path}{quote(uid, safe='')}.vcf"

    def put_card(
        self,
        href: str,
        text: str,
        etag: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> Optional[str]:
        """
        Create or replace one card with PUT.

        With an etag the write only succeeds if the card is unchanged on the
        server (If-Match); without one it only succeeds if the card does not
        exist yet (If-None-Match).

        Args:
            href: Card path or absolute URL
            text: vCard text
            etag: Version tag the card was last synced at
            timeout: Per-request timeout in seconds

        Returns:
            The new etag, if the server reported one

        Raises:
            PreconditionFailedError: If the card changed (or already exists)
            RemoteCallError: For other request failures
        """
        url = urljoin(self.address_book_url, href)
        headers = {"If-Match": etag} if etag else {"If-None-Match": "*"}
        response = self._request(
            "PUT",
            url,
            body=text,
            timeout=timeout,
            headers=headers,
            content_type="text/vcard; charset=utf-8",
        )
        new_etag = response.headers.get("ETag")
        return new_etag.strip() if new_etag else None
