import logging
from typing import Any, Protocol

import httpx

from catalog_updater.errors import RateLimitedError, RemoteServiceError
from catalog_updater.schemas import (
    FieldSetResult,
    FieldUpdate,
    PropertyUpdate,
    PropertyUpdateResult,
    RemoteEntity,
    UserError,
)


logger = logging.getLogger(__name__)


GET_PRODUCT_BY_HANDLE = """
query getProductByHandle($handle: String!) {
  productByHandle(handle: $handle) {
    id
    handle
    title
    tags
  }
}
"""

SET_METAFIELDS = """
mutation metafieldsSet($metafields: [MetafieldsSetInput!]!) {
  metafieldsSet(metafields: $metafields) {
    metafields { namespace key value type }
    userErrors { field message code }
  }
}
"""

UPDATE_PRODUCT_PROPERTIES = """
mutation productUpdate($input: ProductInput!) {
  productUpdate(input: $input) {
    product { id handle title tags }
    userErrors { field message }
  }
}
"""


class RemoteUpdateService(Protocol):
    async def fetch_by_handle(self, handle: str) -> RemoteEntity | None: ...

    async def set_fields(self, owner_id: str, fields: list[FieldUpdate]) -> FieldSetResult: ...

    async def update_properties(self, update: PropertyUpdate) -> PropertyUpdateResult: ...


def _entity_from_payload(payload: dict[str, Any] | None) -> RemoteEntity | None:
    if not payload:
        return None
    return RemoteEntity(
        id=str(payload.get("id", "")),
        handle=payload.get("handle", ""),
        title=payload.get("title", ""),
        tags=tuple(payload.get("tags") or ()),
    )


def _user_errors(payload: dict[str, Any]) -> list[UserError]:
    errors = []
    for error in payload.get("userErrors") or []:
        field = error.get("field")
        errors.append(
            UserError(
                message=error.get("message", ""),
                field=tuple(field) if field else None,
                code=error.get("code"),
            )
        )
    return errors


def property_update_input(update: PropertyUpdate) -> dict[str, Any]:
    payload: dict[str, Any] = {"id": update.id}
    optional = {
        "title": update.title,
        "descriptionHtml": update.description_html,
        "vendor": update.vendor,
        "productType": update.product_type,
        "tags": update.tags,
        "status": update.status,
    }
    payload.update({name: value for name, value in optional.items() if value is not None})
    if update.fields:
        payload["metafields"] = [
            {"namespace": item.namespace, "key": item.key, "value": item.value, "type": item.type}
            for item in update.fields
        ]
    return payload


class AdminGraphQLClient:
    """Admin GraphQL client implementing ``RemoteUpdateService``.

    Example:
        client = AdminGraphQLClient("mystore.myshopify.com", "shpat_xxxx")
        entity = await client.fetch_by_handle("red-snowboard")
    """

    def __init__(
        self,
        shop_domain: str,
        access_token: str,
        *,
        api_version: str = "2024-01",
        timeout_seconds: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        shop_domain = shop_domain.replace("https://", "").replace("http://", "").rstrip("/")
        self._endpoint = f"https://{shop_domain}/admin/api/{api_version}/graphql.json"
        self._access_token = access_token
        self._timeout = timeout_seconds
        self._transport = transport

    def _headers(self) -> dict[str, str]:
        return {
            "X-Shopify-Access-Token": self._access_token,
            "Content-Type": "application/json",
        }

    async def _execute(self, query: str, variables: dict[str, Any]) -> dict[str, Any]:
        # A client per call keeps the service usable from any event loop.
        try:
            async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
                response = await client.post(
                    self._endpoint,
                    headers=self._headers(),
                    json={"query": query, "variables": variables},
                )
        except httpx.HTTPError as exc:
            raise RemoteServiceError(f"request failed: {exc}") from exc

        if response.status_code == 429:
            logger.warning("remote call throttled", extra={"status_code": 429})
            raise RateLimitedError("HTTP 429: rate limit exceeded")
        if response.status_code >= 400:
            raise RemoteServiceError(f"HTTP {response.status_code}: {response.text[:200]}")

        body = response.json()
        errors = body.get("errors") or []
        if errors:
            if any((error.get("extensions") or {}).get("code") == "THROTTLED" for error in errors):
                raise RateLimitedError("GraphQL request throttled")
            raise RemoteServiceError("; ".join(error.get("message", "unknown error") for error in errors))
        return body.get("data") or {}

    async def fetch_by_handle(self, handle: str) -> RemoteEntity | None:
        data = await self._execute(GET_PRODUCT_BY_HANDLE, {"handle": handle})
        return _entity_from_payload(data.get("productByHandle"))

    async def set_fields(self, owner_id: str, fields: list[FieldUpdate]) -> FieldSetResult:
        metafields = [
            {"ownerId": owner_id, "namespace": item.namespace, "key": item.key, "value": item.value, "type": item.type}
            for item in fields
        ]
        data = await self._execute(SET_METAFIELDS, {"metafields": metafields})
        payload = data.get("metafieldsSet") or {}
        applied = [
            FieldUpdate(namespace=item["namespace"], key=item["key"], value=item["value"], type=item["type"])
            for item in payload.get("metafields") or []
        ]
        return FieldSetResult(applied=applied, user_errors=_user_errors(payload))

    async def update_properties(self, update: PropertyUpdate) -> PropertyUpdateResult:
        data = await self._execute(UPDATE_PRODUCT_PROPERTIES, {"input": property_update_input(update)})
        payload = data.get("productUpdate") or {}
        return PropertyUpdateResult(
            entity=_entity_from_payload(payload.get("product")),
            user_errors=_user_errors(payload),
        )
