from __future__ import annotations

import re
from dataclasses import dataclass

from pnp.core.errors import InputMalformedError


CRN_SEPARATOR = ":"
CRN_SEGMENT_COUNT = 10
# Mask that selects every resource.
GENERIC_CRN_MASK = "crn:v1::::::::"

_NON_ALPHANUMERIC = re.compile(r"[^a-z0-9]")


@dataclass(frozen=True)
class Crn:
    cname: str
    ctype: str
    service_name: str
    location: str
    scope: str
    service_instance: str
    resource_type: str
    resource: str

    def __str__(self) -> str:
        return CRN_SEPARATOR.join(
            [
                "crn",
                "v1",
                self.cname,
                self.ctype,
                self.service_name,
                self.location,
                self.scope,
                self.service_instance,
                self.resource_type,
                self.resource,
            ]
        )


def parse_crn(value: str) -> Crn:
    segments = value.strip().lower().split(CRN_SEPARATOR)
    if len(segments) != CRN_SEGMENT_COUNT or segments[0] != "crn" or segments[1] != "v1":
        raise InputMalformedError(f"invalid CRN: {value!r}")
    return Crn(*segments[2:])


def normalize_crn(value: str) -> str:
    """Lowercase and validate a CRN, returning its canonical string form."""
    return str(parse_crn(value))


def is_valid_crn(value: str) -> bool:
    try:
        parse_crn(value)
    except InputMalformedError:
        return False
    return True


def _segment_matches(mask_segment: str, candidate_segment: str) -> bool:
    if mask_segment in {"", "*"}:
        return True
    if mask_segment.endswith("*"):
        return candidate_segment.startswith(mask_segment[:-1])
    return mask_segment == candidate_segment


def crn_matches(mask: str, candidate: str) -> bool:
    # Empty or generic masks select everything; otherwise compare segment by segment.
    if not mask or mask.strip().lower() in {GENERIC_CRN_MASK, "null"}:
        return True
    mask_segments = mask.strip().lower().split(CRN_SEPARATOR)
    candidate_segments = candidate.strip().lower().split(CRN_SEPARATOR)
    if len(mask_segments) != CRN_SEGMENT_COUNT or len(candidate_segments) != CRN_SEGMENT_COUNT:
        return False
    return all(
        _segment_matches(mask_segment, candidate_segment)
        for mask_segment, candidate_segment in zip(mask_segments, candidate_segments)
    )


def normalize_service_name(name: str) -> str:
    # Deterministic and idempotent: lowercase and map every non-alphanumeric to "-".
    return _NON_ALPHANUMERIC.sub("-", name.strip().lower())
