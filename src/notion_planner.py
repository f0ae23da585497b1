"""Notion planner backend: year-grid tracker and record canvas over the Notion API.

Serves a JSON API for two views:
- Year grid: daily and weekly "plan vs reality" entries (/api/daily-ritual,
  /api/week-planning)
- Canvas: data source records as positioned, nestable nodes (/api/canvas,
  /api/canvas-views, /api/page-blocks)

Token: Sent per request as "Authorization: Bearer <token>" or an apiKey field.
An optional server-side token (--token-file) backs the year-grid routes.
"""

import asyncio
import calendar
import contextlib
import logging
import math
import os
import re
from dataclasses import dataclass, field
from datetime import date, timedelta
from enum import Enum
from pathlib import Path
from typing import Any, Optional

import httpx
import parsy as P
from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.routing import Route

logger = logging.getLogger("notion-planner")

# =============================================================================
# Async HTTP Client
# =============================================================================

# Bounds concurrent Notion requests per process (batch writes fan out)
MAX_CONCURRENT_REQUESTS = 10

_notion_semaphore: Optional[asyncio.Semaphore] = None
_async_client: Optional[httpx.AsyncClient] = None


def _get_semaphore() -> asyncio.Semaphore:
    """Get or create the request-limiting semaphore."""
    global _notion_semaphore
    if _notion_semaphore is None:
        _notion_semaphore = asyncio.Semaphore(MAX_CONCURRENT_REQUESTS)
    return _notion_semaphore


async def _get_async_client() -> httpx.AsyncClient:
    """Get or create the async HTTP client."""
    global _async_client
    if _async_client is None or _async_client.is_closed:
        _async_client = httpx.AsyncClient(timeout=30.0)
    return _async_client


async def _close_async_client() -> None:
    """Close the shared HTTP client, if one was opened."""
    global _async_client
    if _async_client is not None and not _async_client.is_closed:
        await _async_client.aclose()
    _async_client = None


def _http_error_detail(e: httpx.HTTPStatusError, max_len: int = 300) -> str:
    """Extract the truncated response body from an HTTP status error."""
    if e.response is not None:
        return e.response.text[:max_len]
    return str(e)


def _remote_error_message(e: httpx.HTTPStatusError) -> str:
    """Return Notion's own error message for a failed call.

    Notion error bodies are JSON objects with a "message" field; anything else
    falls back to the raw (truncated) body.
    """
    if e.response is None:
        return str(e)
    try:
        body = e.response.json()
    except ValueError:
        return _http_error_detail(e)
    if isinstance(body, dict) and body.get("message"):
        return str(body["message"])
    return _http_error_detail(e)


# =============================================================================
# ID Helpers
# =============================================================================

UUID_PATTERN = re.compile(
    r'^[0-9a-f]{8}-?[0-9a-f]{4}-?[0-9a-f]{4}-?[0-9a-f]{4}-?[0-9a-f]{12}$',
    re.IGNORECASE
)
NOTION_URL_PATTERN = re.compile(
    r'https?://(?:www\.)?notion\.(?:so|site)/(?:[^/]+/)?([^?#]+)',
    re.IGNORECASE
)


def normalize_uuid(uuid_str: str) -> str:
    """Normalize a UUID to standard format with dashes.

    Raises:
        ValueError: If input is not a valid UUID (wrong length or invalid chars).
    """
    clean = uuid_str.replace('-', '').lower()
    if len(clean) != 32:
        raise ValueError(f"Invalid UUID length: {uuid_str}")
    if not all(c in '0123456789abcdef' for c in clean):
        raise ValueError(f"Invalid UUID characters: {uuid_str}")
    return f"{clean[:8]}-{clean[8:12]}-{clean[12:16]}-{clean[16:20]}-{clean[20:]}"


def extract_uuid_from_url(url: str) -> Optional[str]:
    """Extract a Notion UUID from a page or database URL, or None."""
    match = NOTION_URL_PATTERN.match(url)
    if not match:
        return None
    uuid_match = re.search(r'([0-9a-f]{32}|[0-9a-f-]{36})$', match.group(1), re.IGNORECASE)
    if uuid_match:
        return normalize_uuid(uuid_match.group(1))
    return None


def resolve_notion_id(ref: Any, field_name: str) -> str:
    """Resolve a request-supplied ID (UUID with/without dashes, or URL).

    Users paste IDs straight out of the Notion UI, so both forms are accepted.

    Raises:
        RequestValidationError: If the field is missing or not a Notion ID.
    """
    if not isinstance(ref, str) or not ref.strip():
        raise RequestValidationError(f"Missing {field_name}")
    ref = ref.strip()
    if UUID_PATTERN.match(ref):
        return normalize_uuid(ref)
    if ref.startswith('http'):
        uuid = extract_uuid_from_url(ref)
        if uuid:
            return uuid
    raise RequestValidationError(f"Invalid {field_name}: {ref}")


# =============================================================================
# Errors
# =============================================================================


class RequestValidationError(ValueError):
    """Missing or malformed request input; reported as HTTP 400."""


# =============================================================================
# Notion API Client
# =============================================================================

NOTION_API_BASE = "https://api.notion.com/v1"
NOTION_VERSION = "2025-09-03"


async def _notion_request_async(
    method: str,
    endpoint: str,
    token: str,
    json_body: Optional[dict] = None
) -> dict:
    """Make an authenticated async request to the Notion API.

    Failures are not retried: a non-2xx response raises
    httpx.HTTPStatusError straight to the caller.
    """
    sem = _get_semaphore()
    client = await _get_async_client()

    headers = {
        "Authorization": f"Bearer {token}",
        "Notion-Version": NOTION_VERSION,
        "Content-Type": "application/json",
    }

    url = f"{NOTION_API_BASE}{endpoint}"

    async with sem:
        if method == "GET":
            response = await client.get(url, headers=headers)
        elif method == "POST":
            response = await client.post(url, headers=headers, json=json_body or {})
        elif method == "PATCH":
            response = await client.patch(url, headers=headers, json=json_body or {})
        elif method == "DELETE":
            response = await client.delete(url, headers=headers)
        else:
            raise ValueError(f"Unsupported method: {method}")

    response.raise_for_status()
    return response.json()


@dataclass
class NotionContext:
    """Request-scoped collaborators: token, target data source, known schema."""
    token: str
    data_source_id: Optional[str] = None
    schema: list["SchemaEntry"] = field(default_factory=list)

    async def request(
        self,
        method: str,
        endpoint: str,
        json_body: Optional[dict] = None
    ) -> dict:
        return await _notion_request_async(method, endpoint, self.token, json_body)

    def require_data_source(self) -> str:
        if not self.data_source_id:
            raise RequestValidationError("Missing dataSourceId")
        return self.data_source_id


async def fetch_page(ctx: NotionContext, page_id: str) -> dict:
    """Fetch a page (record) with its properties."""
    return await ctx.request("GET", f"/pages/{page_id}")


async def fetch_data_source(ctx: NotionContext, data_source_id: str) -> dict:
    """Fetch data source metadata, including its property schema."""
    return await ctx.request("GET", f"/data_sources/{data_source_id}")


async def query_data_source(
    ctx: NotionContext,
    data_source_id: str,
    filter_obj: Optional[dict] = None,
    sorts: Optional[list] = None,
    limit: Optional[int] = None
) -> list[dict]:
    """Query data source rows, following cursors one page at a time.

    Args:
        ctx: Request context.
        data_source_id: The data source UUID (not the database UUID).
        filter_obj: Optional filter object.
        sorts: Optional list of sort objects.
        limit: Maximum rows to return; None fetches everything.

    Returns:
        List of page objects in API order.
    """
    rows: list[dict] = []
    start_cursor = None

    while True:
        page_size = 100 if limit is None else min(100, limit - len(rows))
        body: dict = {"page_size": page_size}
        if filter_obj:
            body["filter"] = filter_obj
        if sorts:
            body["sorts"] = sorts
        if start_cursor:
            body["start_cursor"] = start_cursor

        result = await ctx.request(
            "POST",
            f"/data_sources/{data_source_id}/query",
            json_body=body
        )

        batch = result.get("results", [])
        rows.extend(batch)
        has_more = result.get("has_more", False)
        logger.info(
            f"Fetched {len(batch)} pages from {data_source_id} "
            f"(total so far: {len(rows)}, has_more: {has_more})"
        )

        start_cursor = result.get("next_cursor")
        if not has_more or not start_cursor:
            break
        if limit is not None and len(rows) >= limit:
            break

    return rows if limit is None else rows[:limit]


async def create_page(ctx: NotionContext, data_source_id: str, properties: dict) -> dict:
    """Create a record in a data source."""
    return await ctx.request("POST", "/pages", json_body={
        "parent": {"type": "data_source_id", "data_source_id": data_source_id},
        "properties": properties,
    })


async def update_page(ctx: NotionContext, page_id: str, properties: dict) -> dict:
    """Update some properties of a record."""
    return await ctx.request("PATCH", f"/pages/{page_id}", json_body={"properties": properties})


async def archive_page(ctx: NotionContext, page_id: str) -> dict:
    """Archive (soft-delete) a record."""
    return await ctx.request("PATCH", f"/pages/{page_id}", json_body={"archived": True})


async def list_block_children(ctx: NotionContext, block_id: str) -> list[dict]:
    """Fetch the immediate children of a page or block, with pagination."""
    blocks: list[dict] = []
    start_cursor = None

    while True:
        endpoint = f"/blocks/{block_id}/children?page_size=100"
        if start_cursor:
            endpoint += f"&start_cursor={start_cursor}"

        result = await ctx.request("GET", endpoint)
        blocks.extend(result.get("results", []))

        start_cursor = result.get("next_cursor")
        if not result.get("has_more") or not start_cursor:
            break

    return blocks


async def append_blocks(ctx: NotionContext, parent_id: str, blocks: list[dict]) -> list[dict]:
    """Append blocks at the end of a page; returns the created blocks."""
    result = await ctx.request(
        "PATCH",
        f"/blocks/{parent_id}/children",
        json_body={"children": blocks}
    )
    return result.get("results", [])


async def update_block(ctx: NotionContext, block_id: str, payload: dict) -> dict:
    return await ctx.request("PATCH", f"/blocks/{block_id}", json_body=payload)


async def delete_block(ctx: NotionContext, block_id: str) -> dict:
    return await ctx.request("DELETE", f"/blocks/{block_id}")


# =============================================================================
# Property Types and Schema
# =============================================================================


class PropertyType(Enum):
    """Notion property type tags."""
    TITLE = "title"
    RICH_TEXT = "rich_text"
    NUMBER = "number"
    SELECT = "select"
    MULTI_SELECT = "multi_select"
    STATUS = "status"
    DATE = "date"
    PEOPLE = "people"
    FILES = "files"
    CHECKBOX = "checkbox"
    URL = "url"
    EMAIL = "email"
    PHONE_NUMBER = "phone_number"
    FORMULA = "formula"
    RELATION = "relation"
    ROLLUP = "rollup"
    CREATED_TIME = "created_time"
    CREATED_BY = "created_by"
    LAST_EDITED_TIME = "last_edited_time"
    LAST_EDITED_BY = "last_edited_by"
    UNIQUE_ID = "unique_id"
    VERIFICATION = "verification"
    BUTTON = "button"
    PLACE = "place"
    UNSUPPORTED = "unsupported"

    @classmethod
    def parse(cls, tag: Any) -> "PropertyType":
        """Map a raw type tag to a member; unknown tags become UNSUPPORTED."""
        try:
            return cls(tag)
        except ValueError:
            logger.warning(f"Unsupported property type: {tag!r}")
            return cls.UNSUPPORTED


@dataclass
class SchemaEntry:
    """Descriptor for one property of a collection."""
    name: str
    type: PropertyType
    id: str = ""

    @classmethod
    def from_dict(cls, data: Any) -> "SchemaEntry":
        """Build from the {name, type, id} shape sent by clients.

        Raises:
            ValueError: If the entry is not an object or has no name.
        """
        if not isinstance(data, dict):
            raise ValueError("schema entry must be an object")
        name = data.get("name")
        if not isinstance(name, str) or not name:
            raise ValueError("schema entry is missing a name")
        return cls(
            name=name,
            type=PropertyType.parse(data.get("type")),
            id=str(data.get("id") or ""),
        )

    def to_dict(self) -> dict:
        return {"name": self.name, "type": self.type.value, "id": self.id}


def infer_schema(first_page: Optional[dict]) -> list[SchemaEntry]:
    """Derive the collection schema from the first record's properties.

    Properties the first record lacks are invisible to schema-driven
    encoding for as long as this schema is used.
    """
    if not first_page:
        return []
    return [
        SchemaEntry(name=name, type=PropertyType.parse(prop.get("type")), id=prop.get("id", ""))
        for name, prop in (first_page.get("properties") or {}).items()
    ]


def schema_from_data_source(data_source: dict) -> list[SchemaEntry]:
    """Read the declared schema from a data source metadata object."""
    return [
        SchemaEntry(
            name=prop.get("name", name),
            type=PropertyType.parse(prop.get("type")),
            id=prop.get("id", ""),
        )
        for name, prop in (data_source.get("properties") or {}).items()
    ]


def parse_schema_payload(raw: Any) -> list[SchemaEntry]:
    """Parse an optional client-supplied schema list.

    Raises:
        RequestValidationError: If the payload is present but malformed.
    """
    if raw is None:
        return []
    if not isinstance(raw, list):
        raise RequestValidationError("schema must be an array")
    try:
        return [SchemaEntry.from_dict(entry) for entry in raw]
    except ValueError as e:
        raise RequestValidationError(f"Invalid schema: {e}") from e


# =============================================================================
# Property Decoder
# =============================================================================

FlatValue = str | int | float | bool | list[str] | None


def _plain_text(rich_text: Optional[list]) -> str:
    return "".join(t.get("plain_text", "") for t in rich_text or [])


def decode_property(prop: dict) -> FlatValue:
    """Flatten one Notion property value.

    Never raises: missing sub-fields degrade to the type's empty value, and
    types without a flat form (formula, rollup, ...) decode to None.
    """
    prop_type = prop.get("type", "")

    if prop_type in ("title", "rich_text"):
        return _plain_text(prop.get(prop_type))

    elif prop_type == "number":
        return prop.get("number")

    elif prop_type in ("select", "status"):
        option = prop.get(prop_type) or {}
        return option.get("name") or ""

    elif prop_type == "multi_select":
        return [opt.get("name", "") for opt in prop.get("multi_select") or []]

    elif prop_type == "date":
        date_obj = prop.get("date") or {}
        return date_obj.get("start") or ""

    elif prop_type == "checkbox":
        return bool(prop.get("checkbox", False))

    elif prop_type in ("url", "email", "phone_number"):
        return prop.get(prop_type) or ""

    elif prop_type in ("relation", "people"):
        return [ref.get("id", "") for ref in prop.get(prop_type) or []]

    elif prop_type == "files":
        return [f.get("name", "") for f in prop.get("files") or []]

    return None


def decode_properties(page: dict) -> dict[str, FlatValue]:
    """Flatten every property of a page, keyed by property name."""
    return {
        name: decode_property(prop)
        for name, prop in (page.get("properties") or {}).items()
    }


def get_page_title(page: dict, preferred: Optional[str] = None) -> str:
    """Extract a record's title, preferring a named title property."""
    props = page.get("properties") or {}

    if preferred and props.get(preferred, {}).get("type") == "title":
        title = _plain_text(props[preferred].get("title"))
        if title:
            return title

    for prop in props.values():
        if prop.get("type") == "title":
            title = _plain_text(prop.get("title"))
            if title:
                return title

    return "Untitled"


# =============================================================================
# Property Encoder
# =============================================================================

# Name fragments that mark a string as the title when no schema is known
TITLE_NAME_HINTS = ("title", "name")


def _text_span(content: str) -> list[dict]:
    return [{"type": "text", "text": {"content": content}}]


def _coerce_number(value: Any) -> Optional[float]:
    # Notion rejects NaN/inf, so unparseable input is sent as an empty number
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return number if math.isfinite(number) else None


def _coerce_checkbox(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("true", "1", "yes", "x")
    return bool(value)


def encode_property_value(prop_type: PropertyType, value: Any) -> Optional[dict]:
    """Encode one flat value as the given declared property type.

    Returns:
        Notion property payload, or None for types that cannot be written.
    """
    if prop_type is PropertyType.TITLE:
        return {"title": _text_span(str(value))}
    elif prop_type is PropertyType.RICH_TEXT:
        return {"rich_text": _text_span(str(value))}
    elif prop_type is PropertyType.NUMBER:
        return {"number": _coerce_number(value)}
    elif prop_type is PropertyType.CHECKBOX:
        return {"checkbox": _coerce_checkbox(value)}
    elif prop_type is PropertyType.RELATION:
        ids = value if isinstance(value, list) else []
        return {"relation": [{"id": str(v)} for v in ids]}
    elif prop_type is PropertyType.MULTI_SELECT:
        names = value if isinstance(value, list) else []
        return {"multi_select": [{"name": str(v)} for v in names]}
    elif prop_type in (PropertyType.SELECT, PropertyType.STATUS):
        # An empty string clears the option
        name = str(value)
        return {prop_type.value: {"name": name} if name else None}
    elif prop_type is PropertyType.DATE:
        start = str(value)
        return {"date": {"start": start} if start else None}
    elif prop_type in (PropertyType.URL, PropertyType.EMAIL, PropertyType.PHONE_NUMBER):
        return {prop_type.value: str(value)}
    return None


def _encode_by_runtime_type(name: str, value: Any) -> Optional[dict]:
    """Guess an encoding from the value's Python type and the property name."""
    if isinstance(value, bool):
        return {"checkbox": value}
    if isinstance(value, str):
        lowered = name.lower()
        if any(hint in lowered for hint in TITLE_NAME_HINTS):
            return {"title": _text_span(value)}
        return {"rich_text": _text_span(value)}
    if isinstance(value, (int, float)):
        return {"number": _coerce_number(value)}
    if isinstance(value, list):
        return {"multi_select": [{"name": str(v)} for v in value]}
    return None


def encode_properties(
    values: dict[str, Any],
    schema: Optional[list[SchemaEntry]] = None
) -> dict[str, dict]:
    """Encode flat values into a Notion properties payload.

    With a non-empty schema, every property is encoded by its declared type
    and names missing from the schema are dropped, so no new remote fields
    are ever created. Without one, the encoding is guessed per value. The
    two strategies never mix within one call.

    Args:
        values: Mapping of property name to flat value. None values are skipped.
        schema: Optional list of schema entries for the target collection.

    Returns:
        Mapping of property name to Notion property payload.
    """
    by_name = {entry.name: entry for entry in schema or []}
    encoded: dict[str, dict] = {}

    for name, value in values.items():
        if value is None:
            continue

        if by_name:
            entry = by_name.get(name)
            if entry is None:
                logger.debug(f"Dropping property {name!r}: not in schema")
                continue
            payload = encode_property_value(entry.type, value)
            if payload is None:
                logger.debug(f"Dropping property {name!r}: {entry.type.value} is not writable")
                continue
        else:
            payload = _encode_by_runtime_type(name, value)
            if payload is None:
                continue

        encoded[name] = payload

    return encoded


# =============================================================================
# Block Content
# =============================================================================

# The only block kinds whose text round-trips through build_block_data
EDITABLE_BLOCK_TYPES = (
    'paragraph',
    'heading_1',
    'heading_2',
    'heading_3',
    'bulleted_list_item',
    'numbered_list_item',
    'quote',
    'callout',
    'toggle',
)

MEDIA_BLOCK_TYPES = {'image', 'video', 'file', 'pdf'}

LINK_BLOCK_TYPES = {'bookmark', 'embed', 'link_preview'}

PLACEHOLDER_BLOCK_TEXT = {
    'table_of_contents': '[Table of Contents]',
    'breadcrumb': '[Breadcrumb]',
    'column_list': '[Column layout - view in Notion]',
    'column': '[Column layout - view in Notion]',
    'synced_block': '[Synced block - view in Notion]',
    'template': '[Template - view in Notion]',
    'link_to_page': '[Link to page]',
}

DEFAULT_CALLOUT_ICON = {"type": "emoji", "emoji": "💡"}


def is_editable_block_type(block_type: Optional[str]) -> bool:
    return block_type in EDITABLE_BLOCK_TYPES


def extract_block_content(block: dict) -> str:
    """Render a block as a single display string."""
    block_type = block.get("type", "")
    data = block.get(block_type)
    if not isinstance(data, dict):
        return ""

    if block_type == "to_do":
        mark = "[x]" if data.get("checked") else "[ ]"
        return f"{mark} {_plain_text(data.get('rich_text'))}"

    if block_type == "code":
        language = data.get("language") or ""
        return f"```{language}\n{_plain_text(data.get('rich_text'))}\n```"

    if "rich_text" in data:
        return _plain_text(data.get("rich_text"))

    if block_type == "equation":
        return data.get("expression") or ""

    if block_type == "divider":
        return "---"

    if block_type in MEDIA_BLOCK_TYPES:
        if data.get("type") == "external":
            url = (data.get("external") or {}).get("url")
        else:
            url = (data.get("file") or {}).get("url")
        return f"[{block_type}: {url or 'no url'}]"

    if block_type in LINK_BLOCK_TYPES:
        return data.get("url") or ""

    if block_type in PLACEHOLDER_BLOCK_TEXT:
        return PLACEHOLDER_BLOCK_TEXT[block_type]

    if block_type == "child_page":
        return f"[Child page: {data.get('title') or 'Untitled'}]"

    if block_type == "child_database":
        return f"[Child database: {data.get('title') or 'Untitled'}]"

    return ""


def simplify_block(block: dict) -> dict:
    """Reduce a block to the flat shape the editor works with."""
    block_type = block.get("type", "")
    return {
        "id": block.get("id", ""),
        "type": block_type,
        "content": extract_block_content(block),
        "hasChildren": bool(block.get("has_children")),
        "editable": is_editable_block_type(block_type),
    }


def _editable_or_paragraph(block_type: Optional[str]) -> str:
    return block_type if is_editable_block_type(block_type) else "paragraph"


def build_block_data(block_type: Optional[str], content: str) -> dict:
    """Build the typed payload for a block update.

    Unknown or missing types fall back to paragraph. Callouts always get the
    default icon.
    """
    block_type = _editable_or_paragraph(block_type)
    data: dict = {"rich_text": _text_span(content)}
    if block_type == "callout":
        data["icon"] = dict(DEFAULT_CALLOUT_ICON)
    return {block_type: data}


def build_block_for_create(block_type: Optional[str], content: str) -> dict:
    """Build a full block object for an append call."""
    block_type = _editable_or_paragraph(block_type)
    return {"object": "block", "type": block_type, **build_block_data(block_type, content)}


# =============================================================================
# Collection (Canvas) Operations
# =============================================================================


def simplify_page(page: dict) -> dict:
    """Reduce a record to {id, properties, url} with flat property values."""
    return {
        "id": page.get("id", ""),
        "properties": decode_properties(page),
        "url": page.get("url", ""),
    }


async def list_collection(
    ctx: NotionContext,
    schema_source: str = "first_record"
) -> tuple[list[dict], list[SchemaEntry]]:
    """Fetch every record of the context's data source, plus its schema.

    Args:
        ctx: Request context; its schema is replaced with the result.
        schema_source: "first_record" infers the schema from the first row;
            "data_source" reads the declared schema from the metadata endpoint.

    Returns:
        Tuple of (simplified items, schema entries).
    """
    data_source_id = ctx.require_data_source()
    pages = await query_data_source(ctx, data_source_id)

    if schema_source == "data_source":
        schema = schema_from_data_source(await fetch_data_source(ctx, data_source_id))
    else:
        schema = infer_schema(pages[0] if pages else None)

    ctx.schema = schema
    return [simplify_page(p) for p in pages], schema


async def create_item(ctx: NotionContext, properties: dict[str, Any]) -> str:
    """Create a record from flat values; returns the new record ID."""
    data_source_id = ctx.require_data_source()
    page = await create_page(ctx, data_source_id, encode_properties(properties, ctx.schema))
    logger.info(f"Created item {page.get('id')} in {data_source_id}")
    return page.get("id", "")


async def update_item(ctx: NotionContext, item_id: str, properties: dict[str, Any]) -> None:
    """Write flat values onto an existing record."""
    encoded = encode_properties(properties, ctx.schema)
    await update_page(ctx, item_id, encoded)
    logger.info(f"Updated item {item_id}: {', '.join(encoded) or 'no writable properties'}")


async def archive_item(ctx: NotionContext, item_id: str) -> None:
    await archive_page(ctx, item_id)
    logger.info(f"Archived item {item_id}")


# =============================================================================
# Page Content Operations
# =============================================================================


async def list_page_blocks(ctx: NotionContext, page_id: str) -> list[dict]:
    """Fetch a page's top-level blocks in editor shape."""
    blocks = await list_block_children(ctx, page_id)
    return [simplify_block(b) for b in blocks]


async def create_page_block(
    ctx: NotionContext,
    page_id: str,
    block_type: Optional[str],
    content: str
) -> Optional[str]:
    """Append a text block to the end of a page; returns its ID."""
    created = await append_blocks(ctx, page_id, [build_block_for_create(block_type, content)])
    return created[0].get("id") if created else None


async def update_page_block(
    ctx: NotionContext,
    block_id: str,
    block_type: Optional[str],
    content: str
) -> None:
    """Replace the text of an editable block.

    Raises:
        RequestValidationError: If block_type is given and not editable.
    """
    if block_type and not is_editable_block_type(block_type):
        raise RequestValidationError(f"Block type is not editable: {block_type}")
    await update_block(ctx, block_id, build_block_data(block_type, content))


async def delete_page_block(ctx: NotionContext, block_id: str) -> None:
    await delete_block(ctx, block_id)


# =============================================================================
# Canvas Views
# =============================================================================

VIEW_NAME_PROPERTY = "View Name"
VIEW_ITEMS_PROPERTY = "items"
ITEM_VIEW_RELATION = "Canvas View"
ITEM_TITLE_PROPERTY = "Task Plan"

# Position metadata lives in plain text properties on each item
CANVAS_NUMBER_FIELDS = ("canvas_x", "canvas_y", "canvas_width")
CANVAS_TEXT_FIELDS = ("canvas_color", "canvas_gradient_start", "canvas_gradient_end")

CANVAS_WRITE_SCHEMA = [
    *(SchemaEntry(name, PropertyType.RICH_TEXT) for name in CANVAS_NUMBER_FIELDS + CANVAS_TEXT_FIELDS),
    SchemaEntry(ITEM_VIEW_RELATION, PropertyType.RELATION),
]

_LEADING_NUMBER = re.compile(r'^\s*[-+]?(?:\d+\.?\d*|\.\d+)(?:[eE][-+]?\d+)?')


def _require_number(value: Any, name: str) -> int | float:
    if isinstance(value, bool) or not isinstance(value, (int, float)) or not math.isfinite(value):
        raise ValueError(f"{name} must be a number")
    return value


def _optional_text(value: Any, name: str) -> Optional[str]:
    if value is None or value == "":
        return None
    if not isinstance(value, str):
        raise ValueError(f"{name} must be a string")
    return value


def _parse_canvas_number(text: str) -> Optional[float]:
    """Read a leading number from stored text ("12.5px" -> 12.5)."""
    match = _LEADING_NUMBER.match(text or "")
    return float(match.group(0)) if match else None


@dataclass
class CanvasPosition:
    """Saved placement and styling of one item on a canvas view."""
    id: str
    x: int | float
    y: int | float
    width: Optional[int | float] = None
    color: Optional[str] = None
    gradient_start: Optional[str] = None
    gradient_end: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Any) -> "CanvasPosition":
        """Parse a client position entry.

        Raises:
            ValueError: If the entry has no id or non-numeric coordinates.
        """
        if not isinstance(data, dict):
            raise ValueError("item position must be an object")
        item_id = data.get("id")
        if not isinstance(item_id, str) or not item_id:
            raise ValueError("item position is missing an id")
        width = data.get("width")
        return cls(
            id=item_id,
            x=_require_number(data.get("x"), "x"),
            y=_require_number(data.get("y"), "y"),
            width=None if width is None else _require_number(width, "width"),
            color=_optional_text(data.get("color"), "color"),
            gradient_start=_optional_text(data.get("gradientStart"), "gradientStart"),
            gradient_end=_optional_text(data.get("gradientEnd"), "gradientEnd"),
        )

    def flat_values(self, view_id: str) -> dict[str, Any]:
        """Flat property values linking this item to a view at this position."""
        return {
            "canvas_x": str(self.x),
            "canvas_y": str(self.y),
            "canvas_width": None if self.width is None else str(self.width),
            "canvas_color": self.color,
            "canvas_gradient_start": self.gradient_start,
            "canvas_gradient_end": self.gradient_end,
            ITEM_VIEW_RELATION: [view_id],
        }


@dataclass
class ItemWriteResult:
    """Outcome of one write inside a best-effort batch."""
    id: str
    ok: bool
    error: Optional[str] = None

    def to_dict(self) -> dict:
        return {"id": self.id, "ok": self.ok, "error": self.error}


def _text_property(page: Optional[dict], name: str) -> str:
    """Plain text of a rich_text property, or "" if absent or another type."""
    if not page:
        return ""
    prop = (page.get("properties") or {}).get(name)
    if not prop or prop.get("type") != "rich_text":
        return ""
    return _plain_text(prop.get("rich_text"))


def _title_property(page: dict, name: str) -> str:
    prop = (page.get("properties") or {}).get(name)
    if not prop or prop.get("type") != "title":
        return ""
    return _plain_text(prop.get("title"))


def _relation_ids(page: dict, name: str) -> list[str]:
    prop = (page.get("properties") or {}).get(name)
    if not prop or prop.get("type") != "relation":
        return []
    return [ref.get("id", "") for ref in prop.get("relation") or []]


async def list_canvas_views(ctx: NotionContext, views_source_id: str) -> list[dict]:
    """List saved canvas views as {id, name, itemIds}; unnamed views are skipped."""
    pages = await query_data_source(ctx, views_source_id)
    views = [
        {
            "id": page.get("id", ""),
            "name": _title_property(page, VIEW_NAME_PROPERTY),
            "itemIds": _relation_ids(page, VIEW_ITEMS_PROPERTY),
        }
        for page in pages
    ]
    return [v for v in views if v["name"]]


def canvas_item_from_page(page: dict) -> dict:
    """Build a canvas node: title, flat properties and parsed placement."""
    placement: dict[str, Any] = {}
    for name in CANVAS_NUMBER_FIELDS:
        placement[name] = _parse_canvas_number(_text_property(page, name))
    for name in CANVAS_TEXT_FIELDS:
        placement[name] = _text_property(page, name) or None

    properties = decode_properties(page)
    properties.update(placement)

    return {
        "id": page.get("id", ""),
        "title": get_page_title(page, preferred=ITEM_TITLE_PROPERTY),
        "properties": properties,
        **placement,
    }


async def get_canvas_view(ctx: NotionContext, view_id: str) -> dict:
    """Fetch a view and every item linked to it.

    Items are fetched concurrently. An item that fails to load is logged
    and left out of the view.
    """
    view_page = await fetch_page(ctx, view_id)
    name = _title_property(view_page, VIEW_NAME_PROPERTY)
    item_ids = _relation_ids(view_page, VIEW_ITEMS_PROPERTY)
    logger.info(f"Fetched view {name!r} with {len(item_ids)} linked items")

    pages = await asyncio.gather(
        *[fetch_page(ctx, item_id) for item_id in item_ids],
        return_exceptions=True
    )

    items = []
    for item_id, page_or_exc in zip(item_ids, pages):
        if isinstance(page_or_exc, BaseException):
            logger.warning(f"Failed to fetch item {item_id}: {page_or_exc}")
            continue
        items.append(canvas_item_from_page(page_or_exc))

    return {"id": view_id, "name": name, "items": items}


async def _write_item_layout(ctx: NotionContext, item_id: str, values: dict[str, Any]) -> None:
    await update_page(ctx, item_id, encode_properties(values, CANVAS_WRITE_SCHEMA))


async def save_canvas_view(
    ctx: NotionContext,
    views_source_id: Optional[str],
    name: str,
    item_ids: list[str],
    existing_view_id: Optional[str] = None,
    positions: Optional[list[CanvasPosition]] = None
) -> tuple[str, list[ItemWriteResult]]:
    """Create or rename a view, then link and position its items.

    The view's own "items" relation is the mirror of each item's
    "Canvas View" relation, so only the item side is written. Item writes
    run as one concurrent batch. A failed item is logged and reported in
    its result entry without failing the save.

    Returns:
        Tuple of (view_id, per-item results in request order).
    """
    title = {VIEW_NAME_PROPERTY: {"title": _text_span(name)}}

    if existing_view_id:
        await update_page(ctx, existing_view_id, title)
        view_id = existing_view_id
        logger.info(f"Updated canvas view: {name}")
    else:
        if not views_source_id:
            raise RequestValidationError("Canvas view database is not configured")
        created = await create_page(ctx, views_source_id, title)
        view_id = created.get("id", "")
        logger.info(f"Created canvas view: {name} (id: {view_id})")

    writes: dict[str, dict[str, Any]] = {}
    for position in positions or []:
        writes[position.id] = position.flat_values(view_id)
    for item_id in item_ids:
        # Items without a saved position are still linked to the view
        writes.setdefault(item_id, {ITEM_VIEW_RELATION: [view_id]})

    if not writes:
        return view_id, []

    logger.info(f"Saving layout for {len(writes)} items in view {view_id}")
    outcomes = await asyncio.gather(
        *[_write_item_layout(ctx, item_id, values) for item_id, values in writes.items()],
        return_exceptions=True
    )

    results = []
    for item_id, outcome in zip(writes, outcomes):
        if isinstance(outcome, BaseException):
            if isinstance(outcome, httpx.HTTPStatusError):
                message = _remote_error_message(outcome)
            else:
                message = f"{type(outcome).__name__}: {outcome}"
            logger.warning(f"Failed to save position for item {item_id}: {message}")
            results.append(ItemWriteResult(id=item_id, ok=False, error=message))
        else:
            results.append(ItemWriteResult(id=item_id, ok=True))

    ok_count = sum(1 for r in results if r.ok)
    logger.info(f"Saved {ok_count}/{len(results)} item layouts for view {view_id}")
    return view_id, results


async def delete_canvas_view(ctx: NotionContext, view_id: str) -> None:
    await archive_page(ctx, view_id)
    logger.info(f"Deleted canvas view: {view_id}")


# =============================================================================
# Year Grid: Daily Ritual and Week Planning
# =============================================================================

DAILY_DATE_PROPERTY = "Date on Daily RItual"
DAILY_TITLE_PROPERTY = "date（daily ritual object）"
DAILY_DATE_FORMULA = "date"
DAILY_TEXT_PROPERTIES = {"plan": "Daily Plan", "reality": "Daily Reality"}
DAILY_STATUS_ROLLUPS = (
    "Task Status - Rollup (1)",
    "Task Status - Rollup (2)",
    "Task Status - Rollup (3)",
)

WEEK_TITLE_PROPERTY = "Week"
WEEK_START_PROPERTY = "Start Date"
WEEK_END_PROPERTY = "End Date"
WEEK_TEXT_PROPERTIES = {"plan": "week plan", "reality": "week reality"}

TASK_STATUSES = {
    "Not started": "Not started",
    "In progress": "In progress",
    "Complete": "Complete",
    "Done": "Complete",
    "Missing": "Missing",
}

# Title dates: exact "2025-05-10", or "2025/5/10" anywhere in the title
_year = P.regex(r'\d{4}')
_iso_title_date = P.seq(
    _year << P.string('-'),
    P.regex(r'\d{2}') << P.string('-'),
    P.regex(r'\d{2}'),
).combine(lambda y, m, d: f"{y}-{m}-{d}") << P.eof
_slash_date = P.seq(
    _year << P.string('/'),
    P.regex(r'\d{1,2}') << P.string('/'),
    P.regex(r'\d{1,2}'),
).combine(lambda y, m, d: f"{y}-{m:0>2}-{d:0>2}")
_slash_title_date = P.regex(r'(?:(?!\d{4}/\d{1,2}/\d{1,2}).)*', re.DOTALL) >> _slash_date


def parse_date_title(title: str) -> Optional[str]:
    """Parse a record title into an ISO date string, or None."""
    text = title.strip()
    try:
        return _iso_title_date.parse(text)
    except P.ParseError:
        pass
    try:
        value, _ = _slash_title_date.parse_partial(text)
        return value
    except P.ParseError:
        return None


def _text_property_for(kind: Any, mapping: dict[str, str]) -> str:
    if kind not in mapping:
        raise RequestValidationError('type must be "plan" or "reality"')
    return mapping[kind]


def _rollup_status(page: Optional[dict], name: str) -> Optional[str]:
    """First status value of a rollup, normalised to a known task status."""
    if not page:
        return None
    prop = (page.get("properties") or {}).get(name)
    if not prop or prop.get("type") != "rollup":
        return None
    array = (prop.get("rollup") or {}).get("array") or []
    if not array or array[0].get("type") != "status":
        return None
    return TASK_STATUSES.get((array[0].get("status") or {}).get("name"))


def _daily_page_date(page: dict) -> str:
    props = page.get("properties") or {}
    date_obj = (props.get(DAILY_DATE_PROPERTY) or {}).get("date") or {}
    if date_obj.get("start"):
        return date_obj["start"][:10]
    title = _title_property(page, DAILY_TITLE_PROPERTY)
    if not title:
        return ""
    return parse_date_title(title) or ""


@dataclass
class DailyEntry:
    """One day of the year grid."""
    date: str
    day_of_year: int
    plan: str
    reality: str
    page_id: Optional[str]
    task_statuses: tuple[Optional[str], ...]

    def to_dict(self) -> dict:
        result = {
            "date": self.date,
            "dayOfYear": self.day_of_year,
            "plan": self.plan,
            "reality": self.reality,
            "pageId": self.page_id,
        }
        for i, status in enumerate(self.task_statuses, 1):
            result[f"taskStatus{i}"] = status
        return result


@dataclass
class WeekEntry:
    """One week of the year grid."""
    week_title: str
    start_date: str
    end_date: str
    week_plan: str
    week_reality: str
    page_id: Optional[str]

    def to_dict(self) -> dict:
        return {
            "weekTitle": self.week_title,
            "startDate": self.start_date,
            "endDate": self.end_date,
            "weekPlan": self.week_plan,
            "weekReality": self.week_reality,
            "pageId": self.page_id,
        }


def validate_iso_date(value: Any, field_name: str = "date") -> str:
    """Require a YYYY-MM-DD string.

    Raises:
        RequestValidationError: If the value is not a valid calendar date.
    """
    if not isinstance(value, str):
        raise RequestValidationError(f"Missing {field_name}")
    try:
        return date.fromisoformat(value).isoformat()
    except ValueError as e:
        raise RequestValidationError(f"Invalid {field_name}: {value}") from e


async def get_daily_ritual_year(
    ctx: NotionContext,
    data_source_id: str,
    year: int
) -> list[DailyEntry]:
    """Build one entry per calendar day of the year.

    Each record's date comes from its date property, falling back to a date
    parsed from its title. Days without a record get empty entries.
    """
    pages = await query_data_source(ctx, data_source_id)
    year_start, year_end = f"{year}-01-01", f"{year}-12-31"

    by_date: dict[str, dict] = {}
    for page in pages:
        date_str = _daily_page_date(page)
        if date_str and year_start <= date_str <= year_end:
            by_date[date_str] = page
    logger.info(f"Matched {len(by_date)} of {len(pages)} daily pages to {year}")

    days = 366 if calendar.isleap(year) else 365
    first_day = date(year, 1, 1)
    entries = []
    for offset in range(days):
        date_str = (first_day + timedelta(days=offset)).isoformat()
        page = by_date.get(date_str)
        entries.append(DailyEntry(
            date=date_str,
            day_of_year=offset + 1,
            plan=_text_property(page, DAILY_TEXT_PROPERTIES["plan"]),
            reality=_text_property(page, DAILY_TEXT_PROPERTIES["reality"]),
            page_id=page.get("id") if page else None,
            task_statuses=tuple(_rollup_status(page, name) for name in DAILY_STATUS_ROLLUPS),
        ))
    return entries


async def update_daily_entry(
    ctx: NotionContext,
    data_source_id: str,
    date_str: str,
    kind: str,
    content: str
) -> str:
    """Write a day's plan or reality, creating the day's record if needed.

    Returns:
        The ID of the updated or created record.
    """
    prop_name = _text_property_for(kind, DAILY_TEXT_PROPERTIES)
    text = {prop_name: {"rich_text": _text_span(content)}}

    matches = await query_data_source(
        ctx,
        data_source_id,
        filter_obj={"property": DAILY_DATE_FORMULA, "date": {"equals": date_str}},
        limit=1
    )

    if matches:
        page_id = matches[0].get("id", "")
        await update_page(ctx, page_id, text)
        logger.info(f"Updated {kind} for {date_str} on page {page_id}")
        return page_id

    page = await create_page(ctx, data_source_id, {
        DAILY_TITLE_PROPERTY: {"title": _text_span(date_str)},
        DAILY_DATE_PROPERTY: {"date": {"start": date_str}},
        **text,
    })
    logger.info(f"Created daily page {page.get('id')} for {date_str}")
    return page.get("id", "")


async def get_week_planning_year(
    ctx: NotionContext,
    data_source_id: str,
    year: int
) -> list[WeekEntry]:
    """Fetch weeks overlapping the year (including cross-year weeks)."""
    year_start, year_end = f"{year}-01-01", f"{year}-12-31"
    pages = await query_data_source(
        ctx,
        data_source_id,
        filter_obj={"and": [
            {"property": WEEK_START_PROPERTY, "date": {"on_or_before": year_end}},
            {"property": WEEK_END_PROPERTY, "date": {"on_or_after": year_start}},
        ]},
        sorts=[{"property": WEEK_START_PROPERTY, "direction": "ascending"}],
    )

    weeks = []
    for page in pages:
        props = page.get("properties") or {}
        week = WeekEntry(
            week_title=_title_property(page, WEEK_TITLE_PROPERTY),
            start_date=((props.get(WEEK_START_PROPERTY) or {}).get("date") or {}).get("start") or "",
            end_date=((props.get(WEEK_END_PROPERTY) or {}).get("date") or {}).get("start") or "",
            week_plan=_text_property(page, WEEK_TEXT_PROPERTIES["plan"]),
            week_reality=_text_property(page, WEEK_TEXT_PROPERTIES["reality"]),
            page_id=page.get("id"),
        )
        if week.start_date and week.end_date:
            weeks.append(week)
    return weeks


async def update_week_entry(ctx: NotionContext, page_id: str, kind: str, content: str) -> None:
    prop_name = _text_property_for(kind, WEEK_TEXT_PROPERTIES)
    await update_page(ctx, page_id, {prop_name: {"rich_text": _text_span(content)}})
    logger.info(f"Updated week {kind} on page {page_id}")


# =============================================================================
# HTTP API
# =============================================================================


@dataclass
class Settings:
    """Server configuration, populated from CLI flags and environment."""
    server_token: Optional[str] = None
    daily_ritual_db: Optional[str] = None
    week_planning_db: Optional[str] = None
    canvas_view_db: Optional[str] = None


def _ok(**payload: Any) -> JSONResponse:
    return JSONResponse({"success": True, **payload})


def _fail(message: str, status_code: int) -> JSONResponse:
    return JSONResponse({"success": False, "error": message}, status_code=status_code)


def json_endpoint(label: str):
    """Wrap a handler with the API's error-to-response mapping.

    RequestValidationError -> 400 without touching Notion; Notion failures
    -> 500 carrying Notion's message; anything else -> 500.
    """
    def decorator(handler):
        async def endpoint(request: Request) -> JSONResponse:
            try:
                return await handler(request)
            except RequestValidationError as e:
                return _fail(str(e), 400)
            except httpx.HTTPStatusError as e:
                message = _remote_error_message(e)
                logger.error(f"[{label}] Notion error: {message}")
                return _fail(message, 500)
            except Exception as e:
                logger.exception(f"[{label}] Unexpected error")
                return _fail(f"{type(e).__name__}: {e}", 500)
        endpoint.__name__ = handler.__name__
        endpoint.__doc__ = handler.__doc__
        return endpoint
    return decorator


async def _read_json_body(request: Request) -> dict:
    try:
        body = await request.json()
    except ValueError as e:
        raise RequestValidationError("Request body must be JSON") from e
    if not isinstance(body, dict):
        raise RequestValidationError("Request body must be a JSON object")
    return body


def _settings(request: Request) -> Settings:
    return request.app.state.settings


def _request_token(
    request: Request,
    body: Optional[dict] = None,
    allow_server_token: bool = False
) -> str:
    """Find the caller's integration token.

    Checked in order: bearer header, apiKey query parameter, apiKey body
    field, then (for server-configured routes) the server token.
    """
    auth = request.headers.get("Authorization", "")
    if auth.lower().startswith("bearer "):
        token = auth[7:].strip()
    else:
        token = request.query_params.get("apiKey") or (body or {}).get("apiKey") or ""
        token = token.strip() if isinstance(token, str) else ""
    if not token and allow_server_token:
        token = _settings(request).server_token or ""
    if not token:
        raise RequestValidationError("Missing apiKey")
    return token


def _require_configured(value: Optional[str], description: str) -> str:
    if not value:
        raise RuntimeError(f"{description} is not configured")
    return value


def _parse_year(raw: Optional[str]) -> int:
    if raw is None:
        return date.today().year
    try:
        year = int(raw)
    except ValueError as e:
        raise RequestValidationError(f"Invalid year: {raw}") from e
    if not 1 <= year <= 9999:
        raise RequestValidationError(f"Invalid year: {raw}")
    return year


def _require_properties(body: dict) -> dict:
    properties = body.get("properties")
    if not isinstance(properties, dict):
        raise RequestValidationError("properties must be an object")
    return properties


def _require_content(body: dict) -> str:
    content = body.get("content", "")
    if content is None:
        return ""
    if not isinstance(content, str):
        raise RequestValidationError("content must be a string")
    return content


@json_endpoint("Canvas API")
async def canvas_endpoint(request: Request) -> JSONResponse:
    """GET: list records and schema. POST: create, update or archive a record."""
    if request.method == "GET":
        token = _request_token(request)
        ctx = NotionContext(
            token=token,
            data_source_id=resolve_notion_id(request.query_params.get("dataSourceId"), "dataSourceId"),
        )
        schema_source = request.query_params.get("schemaSource", "first_record")
        if schema_source not in ("first_record", "data_source"):
            raise RequestValidationError(f"Invalid schemaSource: {schema_source}")
        items, schema = await list_collection(ctx, schema_source)
        return _ok(items=items, schema=[entry.to_dict() for entry in schema])

    body = await _read_json_body(request)
    ctx = NotionContext(
        token=_request_token(request, body),
        data_source_id=resolve_notion_id(body.get("dataSourceId"), "dataSourceId"),
        schema=parse_schema_payload(body.get("schema")),
    )
    action = body.get("action")

    if action == "create":
        item_id = await create_item(ctx, _require_properties(body))
        return _ok(itemId=item_id)
    elif action == "update":
        item_id = resolve_notion_id(body.get("itemId"), "itemId")
        await update_item(ctx, item_id, _require_properties(body))
        return _ok()
    elif action == "archive":
        await archive_item(ctx, resolve_notion_id(body.get("itemId"), "itemId"))
        return _ok()

    raise RequestValidationError("Invalid action")


@json_endpoint("Page Blocks API")
async def page_blocks_endpoint(request: Request) -> JSONResponse:
    """GET: list a page's blocks. POST: create, update or delete a block."""
    if request.method == "GET":
        ctx = NotionContext(token=_request_token(request))
        page_id = resolve_notion_id(request.query_params.get("pageId"), "pageId")
        return _ok(blocks=await list_page_blocks(ctx, page_id))

    body = await _read_json_body(request)
    ctx = NotionContext(token=_request_token(request, body))
    page_id = resolve_notion_id(body.get("pageId"), "pageId")
    action = body.get("action")
    block_type = body.get("blockType") or "paragraph"

    if action == "update" and body.get("blockId"):
        block_id = resolve_notion_id(body.get("blockId"), "blockId")
        await update_page_block(ctx, block_id, block_type, _require_content(body))
        return _ok()
    elif action == "create":
        block_id = await create_page_block(ctx, page_id, block_type, _require_content(body))
        return _ok(blockId=block_id)
    elif action == "delete" and body.get("blockId"):
        await delete_page_block(ctx, resolve_notion_id(body.get("blockId"), "blockId"))
        return _ok()

    raise RequestValidationError("Invalid action")


def _views_source(request: Request, override: Any) -> Optional[str]:
    if override:
        return resolve_notion_id(override, "viewsDataSourceId")
    return _settings(request).canvas_view_db


@json_endpoint("Canvas Views API")
async def canvas_views_endpoint(request: Request) -> JSONResponse:
    """GET: list views, or one view with items. POST: save. DELETE: archive."""
    if request.method == "GET":
        ctx = NotionContext(token=_request_token(request))
        view_id = request.query_params.get("viewId")
        if view_id:
            view = await get_canvas_view(ctx, resolve_notion_id(view_id, "viewId"))
            return _ok(view=view)
        source = _views_source(request, request.query_params.get("viewsDataSourceId"))
        if not source:
            raise RequestValidationError("Canvas view database is not configured")
        return _ok(views=await list_canvas_views(ctx, source))

    if request.method == "DELETE":
        ctx = NotionContext(token=_request_token(request))
        view_id = request.query_params.get("viewId")
        if not view_id:
            raise RequestValidationError("viewId is required")
        await delete_canvas_view(ctx, resolve_notion_id(view_id, "viewId"))
        return _ok()

    body = await _read_json_body(request)
    ctx = NotionContext(token=_request_token(request, body))

    name = body.get("name")
    if not isinstance(name, str) or not name.strip():
        raise RequestValidationError("View name is required")
    item_ids = body.get("itemIds")
    if not isinstance(item_ids, list) or not all(isinstance(i, str) for i in item_ids):
        raise RequestValidationError("itemIds must be an array")
    raw_positions = body.get("itemPositions")
    if raw_positions is not None and not isinstance(raw_positions, list):
        raise RequestValidationError("itemPositions must be an array")
    try:
        positions = [CanvasPosition.from_dict(p) for p in raw_positions or []]
    except ValueError as e:
        raise RequestValidationError(f"Invalid itemPositions: {e}") from e

    existing = body.get("existingViewId")
    view_id, results = await save_canvas_view(
        ctx,
        _views_source(request, body.get("viewsDataSourceId")),
        name,
        item_ids,
        existing_view_id=resolve_notion_id(existing, "existingViewId") if existing else None,
        positions=positions,
    )
    return _ok(viewId=view_id, results=[r.to_dict() for r in results])


@json_endpoint("Daily Ritual API")
async def daily_ritual_endpoint(request: Request) -> JSONResponse:
    """GET: one entry per day of the requested year."""
    year = _parse_year(request.query_params.get("year"))
    ctx = NotionContext(token=_request_token(request, allow_server_token=True))
    db = _require_configured(_settings(request).daily_ritual_db, "Daily ritual database")
    entries = await get_daily_ritual_year(ctx, db, year)
    return _ok(data=[e.to_dict() for e in entries])


@json_endpoint("Daily Ritual API")
async def daily_ritual_update_endpoint(request: Request) -> JSONResponse:
    """POST {date, type, content}: write a day's plan or reality."""
    body = await _read_json_body(request)
    if not body.get("date") or not body.get("type") or "content" not in body:
        raise RequestValidationError("Missing required fields: date, type, content")
    date_str = validate_iso_date(body["date"])
    kind = body["type"]
    _text_property_for(kind, DAILY_TEXT_PROPERTIES)
    content = _require_content(body)

    ctx = NotionContext(token=_request_token(request, body, allow_server_token=True))
    db = _require_configured(_settings(request).daily_ritual_db, "Daily ritual database")
    page_id = await update_daily_entry(ctx, db, date_str, kind, content)
    return _ok(pageId=page_id)


@json_endpoint("Week Planning API")
async def week_planning_endpoint(request: Request) -> JSONResponse:
    """GET: weeks overlapping the requested year."""
    year = _parse_year(request.query_params.get("year"))
    ctx = NotionContext(token=_request_token(request, allow_server_token=True))
    db = _require_configured(_settings(request).week_planning_db, "Week planning database")
    weeks = await get_week_planning_year(ctx, db, year)
    return _ok(data=[w.to_dict() for w in weeks])


@json_endpoint("Week Planning API")
async def week_planning_update_endpoint(request: Request) -> JSONResponse:
    """POST {pageId, type, content}: write a week's plan or reality."""
    body = await _read_json_body(request)
    if not body.get("pageId"):
        raise RequestValidationError("pageId is required")
    page_id = resolve_notion_id(body["pageId"], "pageId")
    kind = body.get("type")
    _text_property_for(kind, WEEK_TEXT_PROPERTIES)
    content = _require_content(body)

    ctx = NotionContext(token=_request_token(request, body, allow_server_token=True))
    await update_week_entry(ctx, page_id, kind, content)
    return _ok()


async def health_endpoint(request: Request) -> JSONResponse:
    """Health check endpoint for easy testing."""
    settings = _settings(request)
    return JSONResponse({
        "status": "ok",
        "server_token_loaded": settings.server_token is not None,
        "daily_ritual_db": bool(settings.daily_ritual_db),
        "week_planning_db": bool(settings.week_planning_db),
        "canvas_view_db": bool(settings.canvas_view_db),
    })


@contextlib.asynccontextmanager
async def _lifespan(app: Starlette):
    yield
    await _close_async_client()


def create_app(settings: Optional[Settings] = None) -> Starlette:
    """Build the Starlette application with all API routes."""
    app = Starlette(
        routes=[
            Route("/api/canvas", canvas_endpoint, methods=["GET", "POST"]),
            Route("/api/page-blocks", page_blocks_endpoint, methods=["GET", "POST"]),
            Route("/api/canvas-views", canvas_views_endpoint, methods=["GET", "POST", "DELETE"]),
            Route("/api/daily-ritual", daily_ritual_endpoint, methods=["GET"]),
            Route("/api/daily-ritual/update", daily_ritual_update_endpoint, methods=["POST"]),
            Route("/api/week-planning", week_planning_endpoint, methods=["GET"]),
            Route("/api/week-planning/update", week_planning_update_endpoint, methods=["POST"]),
            Route("/health", health_endpoint, methods=["GET"]),
        ],
        lifespan=_lifespan,
    )
    app.state.settings = settings or Settings()
    return app


# =============================================================================
# Main Entry Point
# =============================================================================

def main():
    """Run the planner API server.

    Usage:
        notion-planner                                  # per-request tokens only
        notion-planner --token-file secrets/notion_token --daily-ritual-db <id>
    """
    import argparse

    parser = argparse.ArgumentParser(description="Notion planner API server")
    parser.add_argument("--host", default="127.0.0.1", help="Bind address")
    parser.add_argument("--port", type=int, default=3000, help="Bind port")
    parser.add_argument(
        "--token-file",
        help="Path to file containing a Notion token for the year-grid routes"
    )
    parser.add_argument(
        "--daily-ritual-db",
        default=os.environ.get("NOTION_DAILY_RITUAL_DB"),
        help="Daily ritual data source ID (env: NOTION_DAILY_RITUAL_DB)"
    )
    parser.add_argument(
        "--week-planning-db",
        default=os.environ.get("NOTION_WEEK_PLANNING_DB"),
        help="Week planning data source ID (env: NOTION_WEEK_PLANNING_DB)"
    )
    parser.add_argument(
        "--canvas-view-db",
        default=os.environ.get("NOTION_CANVAS_VIEW_DB"),
        help="Canvas view data source ID (env: NOTION_CANVAS_VIEW_DB)"
    )
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        datefmt="%H:%M:%S"
    )

    settings = Settings(
        daily_ritual_db=args.daily_ritual_db,
        week_planning_db=args.week_planning_db,
        canvas_view_db=args.canvas_view_db,
    )

    if args.token_file:
        token_path = Path(args.token_file).expanduser()
        if not token_path.exists():
            logger.error(f"Token file not found: {token_path}")
            raise SystemExit(1)
        settings.server_token = token_path.read_text().strip()
        if not settings.server_token:
            logger.error("Token file is empty")
            raise SystemExit(1)
        logger.info(f"Notion token loaded from {token_path}")

    import uvicorn

    logger.info(f"Starting planner API on http://{args.host}:{args.port}")
    uvicorn.run(create_app(settings), host=args.host, port=args.port, log_level="warning")


if __name__ == "__main__":
    main()
