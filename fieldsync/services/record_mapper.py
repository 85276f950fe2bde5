"""
record_mapper.py — Jobber node → NormalizedRecord mapping

Each synced entity keeps two sections: `fields` (the normalized columns the
aggregator reads) and `raw_payload` (the node exactly as Jobber sent it).

Business Rules:
- Status values are lower-cased (`CONVERTED` → `converted`)
- Quote service address falls back to the client's billing address
- Missing amounts stay None, never 0
- Request salesperson = first assigned user on the assessment
- Nodes without an `id` are skipped (logged by the caller)

Called by: services/pager.py via queries.ENTITY_SPECS
Depends on: utils (safe_float, safe_int, parse_datetime)
"""

from dataclasses import dataclass
from datetime import datetime

from ..models import ENTITY_JOB, ENTITY_QUOTE, ENTITY_REQUEST
from ..utils import isoformat, parse_datetime, safe_float, safe_int


@dataclass
class NormalizedRecord:
    entity_type: str
    remote_id: str
    fields: dict
    raw_payload: dict
    remote_updated_at: datetime | None = None


def _get(node, *path):
    """Walk nested dicts; None as soon as a level is missing or not a dict."""
    cur = node
    for key in path:
        if not isinstance(cur, dict):
            return None
        cur = cur.get(key)
    return cur


def _lower(v):
    return v.lower() if isinstance(v, str) else None


def _ts(v) -> str | None:
    return isoformat(parse_datetime(v))


def _address(addr) -> dict:
    addr = addr if isinstance(addr, dict) else {}
    return {
        "service_street": addr.get("street"),
        "service_city": addr.get("city"),
        "service_state": addr.get("province"),
        "service_zip": addr.get("postalCode"),
    }


def _client(node) -> dict:
    return {
        "client_id": _get(node, "client", "id"),
        "client_name": _get(node, "client", "name"),
    }


def map_quote(node: dict) -> NormalizedRecord | None:
    remote_id = node.get("id") if isinstance(node, dict) else None
    if not remote_id:
        return None
    addr = _get(node, "property", "address") or _get(node, "client", "billingAddress")
    fields = {
        "quote_number": safe_int(node.get("quoteNumber")),
        "title": node.get("title"),
        "status": _lower(node.get("quoteStatus")),
        "total": safe_float(_get(node, "amounts", "total")),
        "subtotal": safe_float(_get(node, "amounts", "subtotal")),
        "discount": safe_float(_get(node, "amounts", "discountAmount")),
        **_client(node),
        **_address(addr),
        "drafted_at": _ts(node.get("createdAt")),
        "sent_at": _ts(node.get("sentAt")),
        "approved_at": _ts(_get(node, "lastTransitioned", "approvedAt")),
        "converted_at": _ts(_get(node, "lastTransitioned", "convertedAt")),
        "request_id": _get(node, "request", "id"),
    }
    return NormalizedRecord(
        entity_type=ENTITY_QUOTE,
        remote_id=str(remote_id),
        fields=fields,
        raw_payload=node,
        remote_updated_at=parse_datetime(node.get("updatedAt")),
    )


def map_job(node: dict) -> NormalizedRecord | None:
    remote_id = node.get("id") if isinstance(node, dict) else None
    if not remote_id:
        return None
    fields = {
        "job_number": safe_int(node.get("jobNumber")),
        "title": node.get("title"),
        "status": _lower(node.get("jobStatus")),
        "total": safe_float(node.get("total")),
        "invoiced_total": safe_float(node.get("invoicedTotal")),
        **_client(node),
        **_address(_get(node, "property", "address")),
        "created_at": _ts(node.get("createdAt")),
        "scheduled_start_at": _ts(node.get("startAt")),
        "completed_at": _ts(node.get("endAt")),
        "closed_at": _ts(node.get("completedAt")),
        "quote_id": _get(node, "quote", "id"),
        "quote_number": safe_int(_get(node, "quote", "quoteNumber")),
    }
    return NormalizedRecord(
        entity_type=ENTITY_JOB,
        remote_id=str(remote_id),
        fields=fields,
        raw_payload=node,
        remote_updated_at=parse_datetime(node.get("updatedAt")),
    )


def map_request(node: dict) -> NormalizedRecord | None:
    remote_id = node.get("id") if isinstance(node, dict) else None
    if not remote_id:
        return None
    assignees = _get(node, "assessment", "assignedUsers", "nodes") or []
    salesperson = None
    if isinstance(assignees, list) and assignees:
        salesperson = _get(assignees[0], "name", "full")
    fields = {
        "title": node.get("title"),
        "status": _lower(node.get("requestStatus")),
        "lead_source": node.get("source"),
        "salesperson": salesperson,
        **_client(node),
        **_address(_get(node, "property", "address")),
        "created_at": _ts(node.get("createdAt")),
        "assessment_start_at": _ts(_get(node, "assessment", "startAt")),
        "assessment_completed_at": _ts(_get(node, "assessment", "completedAt")),
    }
    return NormalizedRecord(
        entity_type=ENTITY_REQUEST,
        remote_id=str(remote_id),
        fields=fields,
        raw_payload=node,
        remote_updated_at=parse_datetime(node.get("updatedAt")),
    )
