"""Remote Data Gateway: the backend API as seen by the sync orchestrator."""

from __future__ import annotations

from abc import ABC, abstractmethod
import base64
import binascii
from copy import deepcopy
from dataclasses import dataclass
import logging
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Union

import httpx

from ..errors import GatewayTimeout, NetworkError, RemoteRejected, ValidationError
from .models import CollectionName, Record

if TYPE_CHECKING:
    from ..configuration import ConfigurationBundle

logger = logging.getLogger("fieldsync.sync.gateway")

ENDPOINTS: Dict[CollectionName, str] = {
    CollectionName.CHECKLISTS: "checklist",
    CollectionName.TEMPLATES: "checklistmodel",
    CollectionName.VEHICLES: "vehicle",
}

# Statuses worth retrying; every other 4xx is a permanent refusal.
TRANSIENT_STATUS = {401, 403, 408, 429}


@dataclass
class GatewaySettings:
    base_url: str = ""
    request_timeout: float = 10.0
    upload_path: str = ""
    auth_token: str = ""

    @classmethod
    def from_bundle(cls, bundle: "ConfigurationBundle") -> "GatewaySettings":
        raw = bundle.merged.get("gateway", {}) if bundle.merged else {}
        try:
            timeout = float(raw.get("request_timeout", 10.0))
        except (TypeError, ValueError):
            timeout = 10.0
        return cls(
            base_url=str(raw.get("base_url") or ""),
            request_timeout=timeout if timeout > 0 else 10.0,
            upload_path=str(raw.get("upload_path") or ""),
            auth_token=str(raw.get("auth_token") or ""),
        )


class RemoteGateway(ABC):
    """Interface the orchestrator depends on. Implementations raise
    ``NetworkError`` for transient failures and ``RemoteRejected`` when the
    remote authority refuses a record for good."""

    tenant_id: Optional[str] = None

    @abstractmethod
    async def fetch_collection(
        self,
        name: Union[str, CollectionName],
        since: Optional[str] = None,
    ) -> List[Record]:
        ...

    @abstractmethod
    async def submit(self, collection: Union[str, CollectionName], record: Record) -> Dict[str, Any]:
        ...

    @abstractmethod
    async def upload_binary_attachment(
        self,
        data: bytes,
        content_type: str = "application/octet-stream",
        filename: str = "attachment",
    ) -> str:
        """Return a URL for ``data``, or an inline ``data:`` URL."""

    async def healthcheck(self, timeout: Optional[float] = None) -> bool:
        return True

    async def aclose(self) -> None:
        return None


def inline_data_url(data: bytes, content_type: str) -> str:
    encoded = base64.b64encode(data).decode("ascii")
    return f"data:{content_type};base64,{encoded}"


class HttpGateway(RemoteGateway):
    """JSON-over-HTTP gateway addressing ``{base_url}/{tenant}/{endpoint}``."""

    def __init__(
        self,
        settings: Optional[GatewaySettings] = None,
        tenant_id: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.settings = settings or GatewaySettings()
        self.tenant_id = tenant_id
        headers = {"Accept": "application/json"}
        if self.settings.auth_token:
            headers["Authorization"] = f"Bearer {self.settings.auth_token}"
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            base_url=self.settings.base_url,
            timeout=self.settings.request_timeout,
            headers=headers,
            transport=transport,
        )

    def _path(self, collection: CollectionName) -> str:
        endpoint = ENDPOINTS.get(collection)
        if endpoint is None:
            raise ValidationError(f"Collection '{collection.value}' has no remote endpoint")
        if not self.tenant_id:
            raise ValidationError("No tenant selected for remote calls")
        return f"{self.tenant_id}/{endpoint}"

    async def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        try:
            response = await self._client.request(method, path, **kwargs)
        except httpx.TimeoutException as exc:
            raise GatewayTimeout(f"{method} {path} timed out") from exc
        except httpx.TransportError as exc:
            raise NetworkError(f"{method} {path} failed: {exc}") from exc

        status = response.status_code
        if status >= 500 or status in TRANSIENT_STATUS:
            raise NetworkError(f"{method} {path} returned HTTP {status}")
        if status >= 400:
            raise RemoteRejected(
                f"{method} {path} rejected with HTTP {status}: {_error_detail(response)}",
                status_code=status,
            )
        return response

    async def fetch_collection(
        self,
        name: Union[str, CollectionName],
        since: Optional[str] = None,
    ) -> List[Record]:
        collection = CollectionName.parse(name)
        params = {"since": since} if since else None
        response = await self._request("GET", self._path(collection), params=params)
        body = _json_body(response)
        if isinstance(body, dict):
            items = body.get("data", body.get("items", []))
        else:
            items = body
        if not isinstance(items, list):
            raise RemoteRejected(f"Unexpected {collection.value} response shape", status_code=response.status_code)

        records: List[Record] = []
        for item in items:
            if not isinstance(item, dict) or item.get("id") in (None, ""):
                logger.warning("Skipping %s item without an id", collection.value)
                continue
            records.append(
                Record(
                    id=str(item["id"]),
                    collection=collection,
                    payload=item,
                    synced=True,
                    from_remote=True,
                )
            )
        logger.debug("Fetched %d %s record(s)", len(records), collection.value)
        return records

    async def submit(self, collection: Union[str, CollectionName], record: Record) -> Dict[str, Any]:
        name = CollectionName.parse(collection)
        payload = await self._prepare_payload(record)
        response = await self._request("POST", self._path(name), json=payload)
        if not response.content:
            return {}
        body = _json_body(response)
        return body if isinstance(body, dict) else {"data": body}

    async def upload_binary_attachment(
        self,
        data: bytes,
        content_type: str = "application/octet-stream",
        filename: str = "attachment",
    ) -> str:
        if not self.settings.upload_path:
            return inline_data_url(data, content_type)
        response = await self._request(
            "POST",
            self.settings.upload_path,
            files={"file": (filename, data, content_type)},
        )
        body = _json_body(response)
        url = body.get("url") if isinstance(body, dict) else None
        if not url:
            raise RemoteRejected("Upload response did not include a url", status_code=response.status_code)
        return str(url)

    async def healthcheck(self, timeout: Optional[float] = None) -> bool:
        path = f"{self.tenant_id}/healthcheck" if self.tenant_id else "healthcheck"
        try:
            response = await self._client.head(path, timeout=timeout or self.settings.request_timeout)
        except httpx.HTTPError as exc:
            logger.debug("Healthcheck failed: %s", exc)
            return False
        return response.status_code < 500

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def _prepare_payload(self, record: Record) -> Dict[str, Any]:
        """Copy the payload, uploading inline attachments that lack a url.

        The stored record is left untouched.
        """

        if isinstance(record.payload, dict):
            payload = deepcopy(record.payload)
        else:
            payload = {"data": deepcopy(record.payload)}
        payload.setdefault("id", record.id)

        attachments = payload.get("attachments")
        if not isinstance(attachments, list):
            return payload
        for index, attachment in enumerate(attachments):
            if not isinstance(attachment, dict) or attachment.get("url") or not attachment.get("data"):
                continue
            try:
                raw = base64.b64decode(attachment["data"], validate=True)
            except (binascii.Error, TypeError, ValueError) as exc:
                raise ValidationError(
                    f"Attachment {index} of {record.id} is not valid base64"
                ) from exc
            content_type = str(attachment.get("content_type") or "application/octet-stream")
            url = await self.upload_binary_attachment(
                raw,
                content_type=content_type,
                filename=str(attachment.get("name") or f"attachment-{index}"),
            )
            uploaded = {key: value for key, value in attachment.items() if key != "data"}
            uploaded["url"] = url
            attachments[index] = uploaded
        return payload


def _json_body(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError as exc:
        raise RemoteRejected(
            f"Remote returned a non-JSON body for {response.request.url}",
            status_code=response.status_code,
        ) from exc


def _error_detail(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text[:200] or response.reason_phrase
    if isinstance(body, dict):
        for key in ("message", "detail", "error"):
            if body.get(key):
                return str(body[key])
    return str(body)[:200]


__all__ = [
    "ENDPOINTS",
    "GatewaySettings",
    "HttpGateway",
    "RemoteGateway",
    "inline_data_url",
]
