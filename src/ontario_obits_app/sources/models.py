#!filepath: src/ontario_obits_app/sources/models.py
from __future__ import annotations

import json
import sqlite3
from dataclasses import dataclass, field
from typing import Annotated, Any, Literal, Mapping, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError, model_validator

from ontario_obits_app.utils.logger import get_logger

logger = get_logger(__name__)

ADAPTER_KINDS: tuple[str, ...] = (
    "generic_html",
    "frontrunner",
    "remembering_ca",
    "legacy_com",
    "tribute_archive",
    "dignity_memorial",
)

GENERIC_SELECTOR_KEYS: tuple[str, ...] = (
    "listing",
    "name",
    "date",
    "link",
    "image",
    "description",
    "location",
)


class _AdapterConfigBase(BaseModel):
    """Settings every adapter kind accepts.

    Attributes:
        container_selectors: Extra container selectors tried before the
            adapter built-ins.
        learned_container_selector: Selector persisted by structure detection.
        funeral_home_name: Funeral home to use when cards do not name one.
    """

    model_config = ConfigDict(extra="ignore")

    container_selectors: list[str] = Field(default_factory=list)
    learned_container_selector: str = ""
    funeral_home_name: str = ""


class GenericHtmlConfig(_AdapterConfigBase):
    """Configurable HTML listing, one CSS selector per card field."""

    kind: Literal["generic_html"] = "generic_html"
    selectors: dict[str, str] = Field(default_factory=dict)
    pagination_param: str = ""

    @model_validator(mode="before")
    @classmethod
    def _fold_flat_selectors(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        out = dict(data)
        selectors = dict(out.get("selectors") or {})
        for key in GENERIC_SELECTOR_KEYS:
            flat = out.pop(f"{key}_selector", None)
            if flat and key not in selectors:
                selectors[key] = str(flat)
        out["selectors"] = selectors
        return out

    def selector(self, key: str) -> str:
        return str(self.selectors.get(key) or "").strip()


class FrontRunnerConfig(_AdapterConfigBase):
    """FrontRunner funeral home sites, `/page/N` pagination."""

    kind: Literal["frontrunner"] = "frontrunner"
    fetch_details: bool = True


class RememberingCaConfig(_AdapterConfigBase):
    """remembering.ca newspaper obituary listings, `?page=N` pagination."""

    kind: Literal["remembering_ca"] = "remembering_ca"
    description_limit: int = 200


class LegacyComConfig(_AdapterConfigBase):
    """legacy.com listings, browsed day by day from a `/today` URL."""

    kind: Literal["legacy_com"] = "legacy_com"
    days_back: int = 7


class TributeArchiveConfig(_AdapterConfigBase):
    """Tribute Archive listings with query or path pagination."""

    kind: Literal["tribute_archive"] = "tribute_archive"
    pagination_style: Literal["query", "path"] = "query"
    page_param: str = "page"


class DignityMemorialConfig(_AdapterConfigBase):
    """Dignity Memorial search listings, `?page=N` pagination, no detail fetch."""

    kind: Literal["dignity_memorial"] = "dignity_memorial"
    description_limit: int = 200


AdapterConfig = Annotated[
    Union[
        GenericHtmlConfig,
        FrontRunnerConfig,
        RememberingCaConfig,
        LegacyComConfig,
        TributeArchiveConfig,
        DignityMemorialConfig,
    ],
    Field(discriminator="kind"),
]

_ADAPTER_CONFIG: TypeAdapter[AdapterConfig] = TypeAdapter(AdapterConfig)


def decode_config_json(raw: Any) -> dict[str, Any]:
    """Decode a stored config blob, returning {} for anything invalid."""
    if isinstance(raw, Mapping):
        return dict(raw)
    try:
        data = json.loads(str(raw or "{}"))
    except json.JSONDecodeError:
        return {}
    return dict(data) if isinstance(data, dict) else {}


def parse_adapter_config(adapter_type: str, raw: Any) -> AdapterConfig:
    """Parse a stored config into the typed variant for `adapter_type`.

    Invalid values fall back to that variant's defaults. Unknown adapter
    types fall back to the generic HTML variant.
    """
    kind = str(adapter_type or "").strip() or "generic_html"
    if kind not in ADAPTER_KINDS:
        kind = "generic_html"
    data = decode_config_json(raw)
    data["kind"] = kind
    try:
        return _ADAPTER_CONFIG.validate_python(data)
    except ValidationError as e:
        logger.warning(
            f"Invalid adapter config, using defaults, adapter={kind}, errors={e.error_count()}"
        )
        return _ADAPTER_CONFIG.validate_python({"kind": kind})


def dump_adapter_config(cfg: AdapterConfig) -> str:
    """Serialize a config for storage, omitting defaults and the tag."""
    payload = cfg.model_dump(exclude={"kind"}, exclude_defaults=True)
    return json.dumps(payload, ensure_ascii=False, sort_keys=True)


@dataclass(frozen=True, slots=True)
class Source:
    """One external listing site, as stored in the registry."""

    id: int
    domain: str
    base_url: str
    adapter_type: str = "generic_html"
    config: AdapterConfig = field(default_factory=GenericHtmlConfig)
    name: str = ""
    city: str = ""
    region: str = ""
    province: str = "ON"
    enabled: bool = True
    image_allowlisted: bool = False
    max_pages_per_run: int = 5
    min_request_interval: float = 2.0
    consecutive_failures: int = 0
    circuit_open_until: Optional[str] = None
    last_success: Optional[str] = None
    last_failure: Optional[str] = None
    last_failure_reason: Optional[str] = None
    total_collected: int = 0

    @property
    def display_name(self) -> str:
        return self.name or self.domain

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> Source:
        adapter_type = str(row["adapter_type"] or "generic_html")
        return cls(
            id=int(row["id"]),
            domain=str(row["domain"]),
            base_url=str(row["base_url"] or ""),
            adapter_type=adapter_type,
            config=parse_adapter_config(adapter_type, row["config"]),
            name=str(row["name"] or ""),
            city=str(row["city"] or ""),
            region=str(row["region"] or ""),
            province=str(row["province"] or "ON"),
            enabled=bool(row["enabled"]),
            image_allowlisted=bool(row["image_allowlisted"]),
            max_pages_per_run=int(row["max_pages_per_run"] or 5),
            min_request_interval=float(row["min_request_interval"] or 0.0),
            consecutive_failures=int(row["consecutive_failures"] or 0),
            circuit_open_until=row["circuit_open_until"],
            last_success=row["last_success"],
            last_failure=row["last_failure"],
            last_failure_reason=row["last_failure_reason"],
            total_collected=int(row["total_collected"] or 0),
        )
