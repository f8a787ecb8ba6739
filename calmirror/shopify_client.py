from __future__ import annotations

import logging
from typing import Any, Callable

import requests

from calmirror.errors import ConfigurationError, StoreError, StoreTransportError
from calmirror.fields import to_field_inputs
from calmirror.models import MutationResult, RemoteFeedConfig, RemoteRecord, StoreConfig, UserError


logger = logging.getLogger(__name__)

PAGE_SIZE = 250

LIST_RECORDS = """
query ListMetaobjects($type: String!, $first: Int!, $after: String) {
  metaobjects(type: $type, first: $first, after: $after) {
    nodes { id handle }
    pageInfo { hasNextPage endCursor }
  }
}"""

FIND_BY_HANDLE = """
query MetaobjectByHandle($handle: MetaobjectHandleInput!) {
  metaobjectByHandle(handle: $handle) { id handle }
}"""

CREATE_RECORD = """
mutation MetaobjectCreate($metaobject: MetaobjectCreateInput!) {
  metaobjectCreate(metaobject: $metaobject) {
    metaobject { id handle }
    userErrors { field message code }
  }
}"""

UPDATE_RECORD = """
mutation MetaobjectUpdate($id: ID!, $metaobject: MetaobjectUpdateInput!) {
  metaobjectUpdate(id: $id, metaobject: $metaobject) {
    metaobject { id handle }
    userErrors { field message code }
  }
}"""

DELETE_RECORD = """
mutation MetaobjectDelete($id: ID!) {
  metaobjectDelete(id: $id) {
    deletedId
    userErrors { field message code }
  }
}"""

CONFIG_BY_ID = """
query CalendarConfig($id: ID!) {
  metaobject(id: $id) {
    ics_url: field(key: "ics_url") { value }
    lookahead_days: field(key: "lookahead_days") { value }
  }
}"""

CONFIG_BY_TYPE = """
query CalendarConfigs($type: String!, $query: String) {
  metaobjects(type: $type, first: 1, query: $query) {
    nodes {
      ics_url: field(key: "ics_url") { value }
      lookahead_days: field(key: "lookahead_days") { value }
    }
  }
}"""


def _metaobject_gid(config_id: str) -> str:
    text = str(config_id or "").strip()
    if text.startswith("gid://"):
        return text
    return f"gid://shopify/Metaobject/{text}"


def _field_value(node: dict[str, Any] | None, key: str) -> str:
    field = (node or {}).get(key) or {}
    return str(field.get("value") or "").strip()


def _remote_config_from_node(node: dict[str, Any] | None) -> RemoteFeedConfig | None:
    if not node:
        return None
    lookahead_text = _field_value(node, "lookahead_days")
    lookahead: int | None = None
    if lookahead_text:
        try:
            lookahead = max(1, int(float(lookahead_text)))
        except ValueError:
            logger.warning("Ignoring non-numeric remote lookahead_days %r", lookahead_text)
    return RemoteFeedConfig(ics_url=_field_value(node, "ics_url"), lookahead_days=lookahead)


def _mutation_result(node: dict[str, Any] | None, id_key: str = "metaobject") -> MutationResult:
    node = node or {}
    errors = [UserError.from_dict(item) for item in node.get("userErrors") or []]
    if id_key == "metaobject":
        record_id = (node.get("metaobject") or {}).get("id")
    else:
        record_id = node.get(id_key)
    return MutationResult(record_id=str(record_id) if record_id else None, user_errors=errors)


def _is_throttled(errors: list[Any]) -> bool:
    for error in errors:
        if isinstance(error, dict) and (error.get("extensions") or {}).get("code") == "THROTTLED":
            return True
    return False


class ShopifyMetaobjectStore:
    def __init__(self, config: StoreConfig) -> None:
        self.config = config

    def _require_config(self) -> None:
        if not self.config.is_configured():
            raise ConfigurationError("Store config is incomplete: shop_domain/access_token required.")

    def _endpoint(self) -> str:
        domain = self.config.shop_domain.strip().rstrip("/")
        if domain.startswith("https://"):
            domain = domain[len("https://") :]
        return f"https://{domain}/admin/api/{self.config.api_version}/graphql.json"

    def _graphql(self, query: str, variables: dict[str, Any] | None = None) -> dict[str, Any]:
        self._require_config()
        try:
            response = requests.post(
                self._endpoint(),
                headers={
                    "Content-Type": "application/json",
                    "X-Shopify-Access-Token": self.config.access_token,
                },
                json={"query": query, "variables": variables or {}},
                timeout=self.config.timeout_seconds,
            )
        except requests.RequestException as exc:
            raise StoreTransportError(f"{type(exc).__name__}: {exc}") from exc

        if response.status_code == 429 or response.status_code >= 500:
            raise StoreTransportError(f"HTTP {response.status_code}: {response.text[:300]}")
        try:
            payload = response.json()
        except ValueError as exc:
            raise StoreError(f"HTTP {response.status_code}: response is not JSON") from exc
        if not isinstance(payload, dict):
            raise StoreError(f"HTTP {response.status_code}: unexpected response shape")

        errors = payload.get("errors")
        if errors:
            if isinstance(errors, list) and _is_throttled(errors):
                raise StoreTransportError(f"GraphQL throttled: {errors}")
            raise StoreError(f"GraphQL errors: {errors}")
        if not response.ok:
            raise StoreError(f"HTTP {response.status_code}: {response.text[:300]}")
        return payload.get("data") or {}

    def _record_input(self, fields: list[tuple[str, str]]) -> dict[str, Any]:
        record: dict[str, Any] = {"fields": to_field_inputs(fields)}
        if self.config.publish:
            record["capabilities"] = {"publishable": {"status": "ACTIVE"}}
        return record

    def list_records(self) -> list[RemoteRecord]:
        records: list[RemoteRecord] = []
        after: str | None = None
        while True:
            data = self._graphql(
                LIST_RECORDS,
                {"type": self.config.metaobject_type, "first": PAGE_SIZE, "after": after},
            )
            connection = data.get("metaobjects") or {}
            for node in connection.get("nodes") or []:
                record_id = str(node.get("id") or "")
                handle = str(node.get("handle") or "")
                if record_id and handle:
                    records.append(RemoteRecord(record_id=record_id, handle=handle))
            page_info = connection.get("pageInfo") or {}
            after = page_info.get("endCursor")
            if not page_info.get("hasNextPage") or not after:
                break
        logger.info("Listed %d %r records from the store", len(records), self.config.metaobject_type)
        return records

    def find_record(self, handle: str) -> RemoteRecord | None:
        data = self._graphql(
            FIND_BY_HANDLE,
            {"handle": {"type": self.config.metaobject_type, "handle": handle}},
        )
        node = data.get("metaobjectByHandle")
        if not node or not node.get("id"):
            return None
        return RemoteRecord(record_id=str(node["id"]), handle=str(node.get("handle") or handle))

    def create_record(self, handle: str, fields: list[tuple[str, str]]) -> MutationResult:
        metaobject = self._record_input(fields)
        metaobject["type"] = self.config.metaobject_type
        metaobject["handle"] = handle
        data = self._graphql(CREATE_RECORD, {"metaobject": metaobject})
        return _mutation_result(data.get("metaobjectCreate"))

    def update_record(self, record_id: str, fields: list[tuple[str, str]]) -> MutationResult:
        data = self._graphql(UPDATE_RECORD, {"id": record_id, "metaobject": self._record_input(fields)})
        return _mutation_result(data.get("metaobjectUpdate"))

    def delete_record(self, record_id: str) -> MutationResult:
        data = self._graphql(DELETE_RECORD, {"id": record_id})
        return _mutation_result(data.get("metaobjectDelete"), id_key="deletedId")

    def fetch_remote_config(
        self,
        *,
        config_id: str = "",
        config_type: str = "calendar_config",
        query: str = "status:active",
    ) -> RemoteFeedConfig | None:
        by_id = None
        if config_id:
            by_id = self._remote_config_lookup(
                "id",
                CONFIG_BY_ID,
                {"id": _metaobject_gid(config_id)},
                lambda data: data.get("metaobject"),
            )
        by_type = None
        if (by_id is None or not by_id.ics_url) and config_type:
            by_type = self._remote_config_lookup(
                "type",
                CONFIG_BY_TYPE,
                {"type": config_type, "query": query or None},
                lambda data: next(iter((data.get("metaobjects") or {}).get("nodes") or []), None),
            )
        if by_id is None:
            return by_type
        if by_type is None:
            return by_id
        # The object named by id wins field by field; the typed lookup only fills gaps.
        return RemoteFeedConfig(
            ics_url=by_id.ics_url or by_type.ics_url,
            lookahead_days=by_id.lookahead_days if by_id.lookahead_days is not None else by_type.lookahead_days,
        )

    def _remote_config_lookup(
        self,
        label: str,
        query: str,
        variables: dict[str, Any],
        pick_node: Callable[[dict[str, Any]], dict[str, Any] | None],
    ) -> RemoteFeedConfig | None:
        try:
            data = self._graphql(query, variables)
        except StoreError as exc:
            # Remote configuration is optional; local settings still apply.
            logger.warning("Remote calendar configuration lookup by %s failed: %s", label, exc)
            return None
        return _remote_config_from_node(pick_node(data))
