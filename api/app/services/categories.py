from __future__ import annotations

import json
import re
from dataclasses import asdict, dataclass, field
from typing import Any, Mapping

REMOTE_CITY = "远程"
WORK_FROM_HOME_CITY = "在家"

_MODULE_SPLIT_RE = re.compile(r"[,，、;；\s]+")
_SLASH_AROUND_SPACES_RE = re.compile(r"\s*/\s*")
_SLASH_VARIANTS = str.maketrans({"／": "/", "\\": "/", "|": "/"})
_JOINED_MODULE_CODES = {"FI/CO": "FICO"}

# (attribute, weight) pairs for the soft score; module overlap is handled separately.
_SOFT_WEIGHTS: tuple[tuple[str, float], ...] = (
    ("city", 2.0),
    ("is_remote", 2.0),
    ("cooperation_mode", 1.0),
    ("work_mode", 1.0),
    ("consultant_level", 1.0),
    ("project_cycle", 1.0),
    ("language", 1.0),
    ("time_requirement", 1.0),
    ("duration_text", 1.0),
    ("years_text", 1.0),
)
MODULE_WEIGHT = 3.0

_TEXT_FIELDS = (
    "city",
    "duration_text",
    "years_text",
    "language",
    "cooperation_mode",
    "work_mode",
    "consultant_level",
    "project_cycle",
    "time_requirement",
)
_FIELD_ALIASES: dict[str, tuple[str, ...]] = {
    "module_codes": ("module_codes", "modules", "module_labels"),
    "city": ("city", "location"),
    "is_remote": ("is_remote", "remote"),
    "duration_text": ("duration_text", "duration"),
    "years_text": ("years_text", "years", "experience_years"),
    "language": ("language",),
    "cooperation_mode": ("cooperation_mode",),
    "work_mode": ("work_mode",),
    "consultant_level": ("consultant_level", "level"),
    "project_cycle": ("project_cycle",),
    "time_requirement": ("time_requirement",),
}


@dataclass(slots=True, frozen=True)
class CategoryAttributes:
    module_codes: frozenset[str] = field(default_factory=frozenset)
    city: str | None = None
    is_remote: bool | None = None
    duration_text: str | None = None
    years_text: str | None = None
    language: str | None = None
    cooperation_mode: str | None = None
    work_mode: str | None = None
    consultant_level: str | None = None
    project_cycle: str | None = None
    time_requirement: str | None = None

    def richness(self) -> int:
        populated = 1 if self.module_codes else 0
        populated += sum(1 for name, _ in _SOFT_WEIGHTS if getattr(self, name) is not None)
        return populated

    def to_json_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["module_codes"] = sorted(self.module_codes)
        return {key: value for key, value in payload.items() if value not in (None, [])}


def extract_category(source: Mapping[str, Any] | str | None) -> CategoryAttributes:
    """Build attributes from raw hint fields or a canonical record's stored attributes.

    Accepts a mapping of hint fields, a canonical row carrying
    ``attributes_json`` (dict or serialized string), or the serialized string
    itself. Absent or blank fields stay ``None``.
    """
    payload = _coerce_mapping(source)
    if "attributes_json" in payload:
        stored = _coerce_mapping(payload.get("attributes_json"))
        # Row-level columns fill gaps the serialized attributes leave open.
        payload = {**{k: v for k, v in payload.items() if k != "attributes_json"}, **stored}

    values: dict[str, Any] = {}
    for name in _TEXT_FIELDS:
        values[name] = _coerce_text(_first_present(payload, _FIELD_ALIASES[name]))
    values["city"] = normalize_city(values["city"])
    values["is_remote"] = _coerce_optional_bool(_first_present(payload, _FIELD_ALIASES["is_remote"]))
    values["module_codes"] = normalize_module_codes(_first_present(payload, _FIELD_ALIASES["module_codes"]))
    return CategoryAttributes(**values)


def normalize_module_codes(value: Any) -> frozenset[str]:
    if value is None:
        return frozenset()
    if isinstance(value, str):
        unified = _SLASH_AROUND_SPACES_RE.sub("/", value.translate(_SLASH_VARIANTS))
        raw_items = _MODULE_SPLIT_RE.split(unified)
    elif isinstance(value, (list, tuple, set, frozenset)):
        raw_items = [item for item in value if isinstance(item, str)]
    else:
        return frozenset()

    codes: set[str] = set()
    for item in raw_items:
        token = re.sub(r"\s+", "", item.translate(_SLASH_VARIANTS)).upper()
        if not token:
            continue
        if token in _JOINED_MODULE_CODES:
            codes.add(_JOINED_MODULE_CODES[token])
            continue
        codes.update(part for part in token.split("/") if part)
    return frozenset(codes)


def normalize_city(value: str | None) -> str | None:
    if not value:
        return None
    city = value.strip()
    if not city:
        return None
    if city == WORK_FROM_HOME_CITY:
        return REMOTE_CITY
    return city


def category_similarity(left: CategoryAttributes, right: CategoryAttributes) -> float:
    """Weighted agreement between two attribute records, with hard vetoes.

    Returns 0 when module-code presence disagrees, when both sides list
    modules but share none, or when both name a city and the cities differ.
    Attributes missing on either side drop out of numerator and denominator.
    """
    if bool(left.module_codes) != bool(right.module_codes):
        return 0.0

    module_overlap: float | None = None
    if left.module_codes and right.module_codes:
        module_overlap = module_overlap_ratio(left.module_codes, right.module_codes)
        if module_overlap <= 0:
            return 0.0

    if left.city and right.city and not _text_equals(left.city, right.city):
        return 0.0

    weighted = 0.0
    total_weight = 0.0
    if module_overlap is not None:
        weighted += MODULE_WEIGHT * module_overlap
        total_weight += MODULE_WEIGHT

    for name, weight in _SOFT_WEIGHTS:
        left_value = getattr(left, name)
        right_value = getattr(right, name)
        if left_value is None or right_value is None:
            continue
        total_weight += weight
        if isinstance(left_value, bool) or isinstance(right_value, bool):
            matched = left_value is right_value
        else:
            matched = _text_equals(left_value, right_value)
        if matched:
            weighted += weight

    if total_weight <= 0:
        return 0.0
    return weighted / total_weight


def module_overlap_ratio(left: frozenset[str], right: frozenset[str]) -> float:
    if not left or not right:
        return 0.0
    return len(left & right) / min(len(left), len(right))


def _text_equals(left: str, right: str) -> bool:
    return left.strip().casefold() == right.strip().casefold()


def _first_present(payload: Mapping[str, Any], keys: tuple[str, ...]) -> Any:
    for key in keys:
        value = payload.get(key)
        if value is not None and value != "" and value != []:
            return value
    return None


def _coerce_mapping(value: Any) -> dict[str, Any]:
    if isinstance(value, str):
        try:
            value = json.loads(value)
        except json.JSONDecodeError:
            return {}
    if isinstance(value, Mapping):
        return dict(value)
    return {}


def _coerce_text(value: Any) -> str | None:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, str):
        stripped = value.strip()
        return stripped or None
    if isinstance(value, (int, float)):
        return str(value)
    return None


def _coerce_optional_bool(value: Any) -> bool | None:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value != 0
    if isinstance(value, str):
        normalized = value.strip().lower()
        if normalized in {"1", "true", "yes", "on"}:
            return True
        if normalized in {"0", "false", "no", "off"}:
            return False
    return None
