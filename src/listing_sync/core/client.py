import logging
import threading
from typing import Any
from xml.etree import ElementTree

import requests
from pydantic import BaseModel

from ..config import Config

logger = logging.getLogger(__name__)


class FetchError(Exception):
    """A remote fetch did not produce a usable result set."""


class TransportError(FetchError):
    """Network failure, non-200 response, or an empty/unparseable body.

    Retryable: nothing was learned about the remote data.
    """


class SourceError(FetchError):
    """The API answered but flagged the request as failed."""

    def __init__(self, action: str, messages: list[str]):
        self.action = action
        self.messages = messages
        detail = "; ".join(messages) if messages else "no detail given"
        super().__init__(f"{action} reported errors: {detail}")


class EmptyResultError(FetchError):
    """The API returned a result count of zero."""


class ListingResponse(BaseModel):
    """Raw body of a successful call plus its parsed document."""

    action: str
    raw: bytes
    data: dict[str, Any]

    model_config = {"frozen": True}

    @property
    def total(self) -> int:
        return _result_count(self.data)


class MediaProbe(BaseModel):
    """Outcome of a HEAD request against a media URL."""

    url: str
    ok: bool
    content_type: str | None = None
    content_length: int | None = None

    model_config = {"frozen": True}


# ---------------------------------------------------------------------------
# XML helpers
# ---------------------------------------------------------------------------


def xml_to_dict(element: ElementTree.Element) -> Any:
    """Convert an element into nested dicts.

    Leaf elements become their stripped text (``""`` when empty).  Child
    tags that repeat become lists; single children stay bare values, so
    callers normalize cardinality with ``as_list``.
    """
    children = list(element)
    if not children:
        return (element.text or "").strip()

    result: dict[str, Any] = {}
    for child in children:
        value = xml_to_dict(child)
        if child.tag in result:
            existing = result[child.tag]
            if isinstance(existing, list):
                existing.append(value)
            else:
                result[child.tag] = [existing, value]
        else:
            result[child.tag] = value
    return result


def parse_response(raw: bytes | str, action: str = "") -> dict[str, Any]:
    """Parse and classify an API response body.

    Raises:
        TransportError: Body is empty or not well-formed XML.
        SourceError: ``REQUESTSTATUS/HASERRORS`` is set.
        EmptyResultError: ``REQUESTSTATUS/RESULTS`` is missing or zero.
    """
    if not raw or not raw.strip():
        raise TransportError(f"{action}: empty response body")
    try:
        root = ElementTree.fromstring(raw)
    except ElementTree.ParseError as e:
        raise TransportError(f"{action}: unparseable response ({e})") from e

    data = xml_to_dict(root)
    if not isinstance(data, dict):
        raise TransportError(f"{action}: response has no content")

    status = data.get("REQUESTSTATUS")
    if not isinstance(status, dict):
        status = {}

    if _truthy(status.get("HASERRORS")):
        errors = status.get("ERRORS")
        items = errors.get("ITEM") if isinstance(errors, dict) else errors
        if items is None or items == "":
            items = []
        elif not isinstance(items, list):
            items = [items]
        messages = []
        for item in items:
            if isinstance(item, dict):
                messages.append(
                    f"{item.get('MESSAGE', '')}: {item.get('DETAIL', '')}".strip(
                        ": "
                    )
                )
            else:
                messages.append(str(item))
        for message in messages:
            logger.error("%s: %s", action, message)
        raise SourceError(action, messages)

    if _result_count(data) <= 0:
        raise EmptyResultError(f"{action}: no results returned")

    return data


def _truthy(value: Any) -> bool:
    if value is None:
        return False
    if isinstance(value, str):
        return value.strip().lower() not in ("", "0", "false", "no")
    return bool(value)


def _result_count(data: dict[str, Any]) -> int:
    status = data.get("REQUESTSTATUS")
    if not isinstance(status, dict):
        return 0
    try:
        return int(status.get("RESULTS") or 0)
    except (TypeError, ValueError):
        return 0


def flatten_params(
    params: dict[str, Any], prefix: str = ""
) -> list[tuple[str, str]]:
    """Flatten nested parameters into bracketed form keys.

    ``{"filtergroup": {"FILTERS": [{"FIELDNAME": "x"}]}}`` becomes
    ``[("filtergroup[FILTERS][0][FIELDNAME]", "x")]``.
    """
    pairs: list[tuple[str, str]] = []
    for key, value in params.items():
        name = f"{prefix}[{key}]" if prefix else str(key)
        match value:
            case dict():
                pairs.extend(flatten_params(value, name))
            case list() | tuple():
                pairs.extend(
                    flatten_params(
                        {str(i): item for i, item in enumerate(value)}, name
                    )
                )
            case None:
                continue
            case bool():
                pairs.append((name, "1" if value else "0"))
            case _:
                pairs.append((name, str(value)))
    return pairs


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------


class ListingClient:
    def __init__(self, config: Config):
        self.config = config
        self._thread_local = threading.local()

    @property
    def session(self) -> requests.Session:
        """Return the current thread's session."""
        return self._get_session()

    def _get_session(self) -> requests.Session:
        """Get or create a thread-local requests.Session."""
        if not hasattr(self._thread_local, "session"):
            self._thread_local.session = self._create_session()
        return self._thread_local.session

    def _create_session(self) -> requests.Session:
        session = requests.Session()
        session.verify = not self.config.insecure
        return session

    def _post(self, action: str, params: dict[str, Any]) -> bytes:
        """POST one API action and return the raw body.

        Raises:
            TransportError: On connection failure, timeout, non-200 status
                or an empty body.
        """
        form = [
            ("username", self.config.username),
            ("password", self.config.password),
            ("action", action),
        ]
        form.extend(flatten_params(params))

        logger.debug("POST %s action=%s", self.config.api_url, action)
        try:
            response = self._get_session().post(
                self.config.api_url,
                data=form,
                timeout=self.config.request_timeout,
            )
        except requests.RequestException as e:
            raise TransportError(f"{action}: request failed ({e})") from e

        if response.status_code != 200:
            raise TransportError(
                f"{action}: unexpected HTTP status {response.status_code}"
            )
        if not response.content:
            raise TransportError(f"{action}: empty response body")
        return response.content

    def request(self, action: str, params: dict[str, Any]) -> ListingResponse:
        """Issue *action* and return its classified response."""
        raw = self._post(action, params)
        data = parse_response(raw, action)
        return ListingResponse(action=action, raw=raw, data=data)

    # ------------------------------------------------------------------
    # API actions
    # ------------------------------------------------------------------

    def get_listings(self, page: int, page_size: int) -> ListingResponse:
        """Fetch one page of all active listings, amenities included."""
        filters = [
            {
                "FIELDCATEGORY": "Listing",
                "FIELDNAME": "Listingid",
                "FILTERTYPE": "GREATER THAN",
                "FILTERVALUE": 0,
            }
        ]
        return self.request(
            "getListings",
            {
                "pagenum": page,
                "pagesize": page_size,
                "filtergroup": {"ANDOR": "AND", "FILTERS": filters},
                "displayamenities": 1,
            },
        )

    def get_changed_listings(self, since: str) -> ListingResponse:
        """Fetch listings created or changed since *since* (YYYY-MM-DD)."""
        return self.request("getChangedListings", {"lastSync": since})

    def get_invalid_listings(self, since: str) -> ListingResponse:
        """Fetch listings removed or deactivated since *since*."""
        return self.request("getInvalidListings", {"lastSync": since})

    def get_listing(self, listing_id: str) -> dict[str, Any]:
        """Fetch one complete listing.

        Single-listing responses carry no result count, so only transport
        and source errors are raised.
        """
        raw = self._post("getListing", {"LISTINGID": listing_id})
        try:
            return parse_response(raw, "getListing")
        except EmptyResultError:
            root = ElementTree.fromstring(raw)
            data = xml_to_dict(root)
            if isinstance(data, dict) and data.get("LISTING"):
                return data
            raise

    # ------------------------------------------------------------------
    # Media
    # ------------------------------------------------------------------

    def probe_media(self, url: str) -> MediaProbe:
        """HEAD *url* and report its content type and length.

        Never raises; an unreachable URL yields ``ok=False``.
        """
        try:
            response = self._get_session().head(
                url, allow_redirects=True, timeout=(10, 60)
            )
        except requests.RequestException as e:
            logger.debug("HEAD %s failed: %s", url, e)
            return MediaProbe(url=url, ok=False)

        if response.status_code != 200:
            return MediaProbe(url=url, ok=False)

        length = response.headers.get("Content-Length")
        try:
            content_length = int(length) if length is not None else None
        except ValueError:
            content_length = None
        return MediaProbe(
            url=url,
            ok=True,
            content_type=response.headers.get("Content-Type"),
            content_length=content_length,
        )

    def download_media(self, url: str) -> tuple[bytes, str | None]:
        """Download *url*, returning its body and content type.

        Raises:
            TransportError: If the download fails.
        """
        try:
            response = self._get_session().get(url, timeout=(10, 120))
            response.raise_for_status()
        except requests.RequestException as e:
            raise TransportError(f"download of {url} failed ({e})") from e
        return response.content, response.headers.get("Content-Type")
