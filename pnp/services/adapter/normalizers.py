from __future__ import annotations

import json
import logging
import re
from typing import Any, Callable

from pnp.core.errors import InputMalformedError
from pnp.domain.messages import NOTIFICATION_TYPES, SOURCE_SERVICENOW, DisplayName, NotificationRecord
from pnp.services.crn import is_valid_crn, normalize_crn
from pnp.services.timestamps import (
    epoch_ms_to_timestamp,
    format_timestamp,
    normalize_optional_timestamp,
    parse_timestamp,
)


logger = logging.getLogger(__name__)

SOURCE_DOCTOR = "doctor"
SOURCE_GHE = "ghe"

# Issue body sections written by the announcement template, e.g. "**==== TITLE ====**".
_GHE_MARKER = re.compile(r"\*\*====\s*([A-Z ]+?)\s*====\*\*")
GHE_REMOVED_LABEL = "removed"
GHE_SECURITY_LABEL = "security"
GHE_ANNOUNCEMENT_LABEL = "announcement"
GHE_AUDIENCE_TAG_PREFIX = "audienceis"

Normalizer = Callable[[dict[str, Any], str], list[NotificationRecord]]


def decode_payload(body: bytes) -> dict[str, Any]:
    try:
        payload = json.loads(body)
    except (UnicodeDecodeError, ValueError) as exc:
        raise InputMalformedError(f"payload is not valid JSON: {exc}") from exc
    if not isinstance(payload, dict):
        raise InputMalformedError("payload must be a JSON object")
    return payload


def _text(value: Any) -> str:
    if value is None:
        return ""
    return str(value).strip()


def _descriptions(value: Any) -> list[DisplayName]:
    # Accept a bare string or an already translated list of {name, language}.
    if value is None or value == "":
        return []
    if isinstance(value, str):
        return [DisplayName(name=value, language="en")]
    if isinstance(value, list):
        names: list[DisplayName] = []
        for item in value:
            if isinstance(item, dict) and item.get("name"):
                names.append(DisplayName(name=str(item["name"]), language=str(item.get("language") or "en")))
            elif isinstance(item, str) and item:
                names.append(DisplayName(name=item, language="en"))
        return names
    raise InputMalformedError("description must be a string or a list of {name, language}")


def _tags(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        items = value.split(",")
    elif isinstance(value, list):
        items = [str(item) for item in value]
    else:
        raise InputMalformedError("tags must be a string or a list")
    return ",".join(item.strip() for item in items if item.strip())


def _crn_list(value: Any) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [item.strip() for item in value.split(",") if item.strip()]
    if isinstance(value, list):
        return [str(item).strip() for item in value if str(item).strip()]
    raise InputMalformedError("crn must be a string or a list of strings")


def _timestamp(value: Any) -> str | None:
    # Sources mix RFC-3339 strings and epoch milliseconds.
    if value is None or value == "":
        return None
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return epoch_ms_to_timestamp(int(value))
    return normalize_optional_timestamp(str(value))


def expand_per_crn(template: dict[str, Any], crns: list[str]) -> list[NotificationRecord]:
    """Build one record per valid CRN; invalid CRNs are skipped and logged."""
    if not crns:
        raise InputMalformedError("notification carries no CRN")
    source_update_time = template.get("source_update_time")
    if not template.get("source_creation_time"):
        template["source_creation_time"] = source_update_time
    records: list[NotificationRecord] = []
    seen: set[str] = set()
    for crn in crns:
        if not is_valid_crn(crn):
            logger.info("skipping invalid CRN %r for %s/%s", crn, template.get("source"), template.get("source_id"))
            continue
        normalized = normalize_crn(crn)
        if normalized in seen:
            continue
        seen.add(normalized)
        records.append(NotificationRecord(crn_full=normalized, **template))
    if not records:
        raise InputMalformedError("notification carries no valid CRN")
    return records


def normalize_generic(payload: dict[str, Any], source: str) -> list[NotificationRecord]:
    source_id = _text(payload.get("source_id") or payload.get("id") or payload.get("number"))
    if not source_id:
        raise InputMalformedError("notification is missing source_id")
    notification_type = _text(payload.get("type")).lower()
    if notification_type not in NOTIFICATION_TYPES:
        raise InputMalformedError(f"unsupported notification type {notification_type!r}")
    template = {
        "source": _text(payload.get("source")) or source,
        "source_id": source_id,
        "type": notification_type,
        "category": _text(payload.get("category")) or None,
        "incident_id": _text(payload.get("incident_id")) or None,
        "short_description": _descriptions(payload.get("short_description")),
        "long_description": _descriptions(payload.get("long_description")),
        "resource_display_names": _descriptions(payload.get("resource_display_names")),
        "tags": _tags(payload.get("tags")),
        "event_time_start": _timestamp(payload.get("event_time_start")),
        "event_time_end": _timestamp(payload.get("event_time_end")),
        "source_creation_time": _timestamp(payload.get("source_creation_time")),
        "source_update_time": _timestamp(payload.get("source_update_time")),
        "pnp_removed": bool(payload.get("pnp_removed", False)),
    }
    crns = _crn_list(payload.get("crn_full") or payload.get("crn") or payload.get("crns"))
    return expand_per_crn(template, crns)


def normalize_snow_incident(payload: dict[str, Any], source: str) -> list[NotificationRecord]:
    payload = dict(payload)
    payload.setdefault("type", "incident")
    payload.setdefault("incident_id", payload.get("number"))
    return normalize_generic(payload, SOURCE_SERVICENOW)


def normalize_bspn(payload: dict[str, Any], source: str) -> list[NotificationRecord]:
    """ServiceNow BSPN: epoch millisecond times, parent incident id, list of CRNs."""
    source_id = _text(payload.get("id"))
    if not source_id:
        raise InputMalformedError("BSPN is missing id")
    components = payload.get("components") or []
    template = {
        "source": SOURCE_SERVICENOW,
        "source_id": source_id,
        "type": "incident",
        "category": _text(payload.get("category")) or None,
        "incident_id": _text(payload.get("parent_id")) or None,
        "short_description": _descriptions(_text(payload.get("title"))),
        "long_description": _descriptions(_text(payload.get("description"))),
        "tags": _tags(payload.get("tags")),
        "event_time_start": _timestamp(payload.get("start_date")),
        "event_time_end": _timestamp(payload.get("end_date")),
        "source_creation_time": _timestamp(payload.get("created_on")),
        "source_update_time": _timestamp(payload.get("modified")),
        "pnp_removed": bool(payload.get("pnp_removed", False)),
    }
    if len(components) > 1:
        logger.info("BSPN %s lists %d components; using the CRNs only", source_id, len(components))
    return expand_per_crn(template, _crn_list(payload.get("crn")))


def normalize_snow_change(payload: dict[str, Any], source: str) -> list[NotificationRecord]:
    """ServiceNow change requests surface as maintenance keyed by the change number."""
    source_id = _text(payload.get("source_id") or payload.get("number"))
    if not source_id:
        raise InputMalformedError("change is missing number")
    template = {
        "source": SOURCE_SERVICENOW,
        "source_id": source_id,
        "type": "maintenance",
        "category": _text(payload.get("category")) or None,
        "incident_id": _text(payload.get("incident_id") or payload.get("number")) or None,
        "short_description": _descriptions(payload.get("short_description")),
        "long_description": _descriptions(payload.get("description") or payload.get("long_description")),
        "tags": _tags(payload.get("tags")),
        "event_time_start": _timestamp(payload.get("planned_start")),
        "event_time_end": _timestamp(payload.get("planned_end")),
        "source_creation_time": _timestamp(payload.get("sys_created_on")),
        "source_update_time": _timestamp(payload.get("sys_updated_on")),
        "pnp_removed": _text(payload.get("state")).lower() in {"cancelled", "canceled"},
    }
    return expand_per_crn(template, _crn_list(payload.get("crn") or payload.get("crns")))


def normalize_doctor_maintenance(payload: dict[str, Any], source: str) -> list[NotificationRecord]:
    source_id = _text(payload.get("id"))
    if not source_id:
        raise InputMalformedError("maintenance is missing id")
    template = {
        "source": SOURCE_DOCTOR,
        "source_id": source_id,
        "type": "maintenance",
        "category": _text(payload.get("category")) or None,
        "short_description": _descriptions(payload.get("title")),
        "long_description": _descriptions(payload.get("description")),
        "tags": _tags(payload.get("tags")),
        "event_time_start": _timestamp(payload.get("planned_start")),
        "event_time_end": _timestamp(payload.get("planned_end")),
        "source_creation_time": _timestamp(payload.get("created_time")),
        "source_update_time": _timestamp(payload.get("updated_time")),
        "pnp_removed": _text(payload.get("status")).lower() in {"cancelled", "canceled", "removed"},
    }
    return expand_per_crn(template, _crn_list(payload.get("crn") or payload.get("crns")))


def parse_ghe_sections(body: str) -> dict[str, str]:
    """Split an announcement issue body into its template sections."""
    sections: dict[str, str] = {}
    matches = list(_GHE_MARKER.finditer(body))
    for index, match in enumerate(matches):
        end = matches[index + 1].start() if index + 1 < len(matches) else len(body)
        sections[match.group(1).strip().upper()] = body[match.end() : end].strip()
    return sections


def _ghe_source_id(issue: dict[str, Any]) -> str:
    # Repository URLs end in ".../repos/<org>/<repo>"; the id is "<org>/<repo>/<number>".
    number = issue.get("number")
    parts = _text(issue.get("repository_url")).rstrip("/").split("/")
    if len(parts) > 3:
        return f"{parts[-2]}/{parts[-1]}/{number}"
    return _text(number)


def normalize_ghe_announcement(payload: dict[str, Any], source: str) -> list[NotificationRecord]:
    issue = payload.get("issue")
    if not isinstance(issue, dict) or issue.get("number") is None:
        raise InputMalformedError("GHE event is missing issue")
    sections = parse_ghe_sections(_text(issue.get("body")))
    title = sections.get("TITLE", "")
    description = sections.get("DESCRIPTION", "")
    if not title or not description:
        raise InputMalformedError("announcement requires TITLE and DESCRIPTION sections")
    labels = {_text(label.get("name")).lower() for label in issue.get("labels") or [] if isinstance(label, dict)}
    action = _text(payload.get("action")).lower()
    added_label = payload.get("label") if isinstance(payload.get("label"), dict) else {}
    removed = GHE_REMOVED_LABEL in labels or (
        action == "labeled" and _text(added_label.get("name")).lower() == GHE_REMOVED_LABEL
    )
    notification_type = "announcement"
    if GHE_SECURITY_LABEL in labels and GHE_ANNOUNCEMENT_LABEL not in labels:
        notification_type = "security"
    audience = sections.get("AUDIENCE", "").strip().lower()
    created = _timestamp(issue.get("created_at"))
    start = sections.get("START", "")
    start_time = None
    if start:
        parsed = parse_timestamp(start)
        if parsed is None:
            raise InputMalformedError(f"could not parse START {start!r}")
        start_time = format_timestamp(parsed)
    template = {
        "source": SOURCE_GHE,
        "source_id": _ghe_source_id(issue),
        "type": notification_type,
        "category": "services",
        "short_description": _descriptions(title),
        "long_description": _descriptions(description),
        "tags": f"{GHE_AUDIENCE_TAG_PREFIX}{audience}" if audience else "",
        "event_time_start": start_time or created,
        "source_creation_time": created,
        "source_update_time": _timestamp(issue.get("updated_at")),
        "pnp_removed": removed,
    }
    locations = sections.get("IMPACTED LOCATIONS", "")
    crns = [line.strip(" -*\t") for line in locations.splitlines() if line.strip(" -*\t")]
    return expand_per_crn(template, crns)


_NORMALIZERS: dict[tuple[str, str], Normalizer] = {
    (SOURCE_SERVICENOW, "bspn"): normalize_bspn,
    (SOURCE_SERVICENOW, "incident"): normalize_snow_incident,
    (SOURCE_SERVICENOW, "change"): normalize_snow_change,
    (SOURCE_DOCTOR, "maintenance"): normalize_doctor_maintenance,
    (SOURCE_GHE, "announcement"): normalize_ghe_announcement,
}


def normalize_raw(body: bytes, *, source: str, kind: str) -> list[NotificationRecord]:
    """Turn a raw hook body into typed rows, one per CRN, sharing (source, source_id)."""
    payload = decode_payload(body)
    normalizer = _NORMALIZERS.get((source, kind), normalize_generic)
    return normalizer(payload, source)
