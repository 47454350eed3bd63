"""
Typed field records for the three survey layers.

Each remote feature's attribute bag is split into the mapped columns of its
layer plus an `extra` dict holding every attribute the mapping does not
cover yet. Parents carry a fingerprint, taken over their own fields and
their children, used to skip unchanged rows.
"""

import hashlib
import json
from dataclasses import dataclass, field, fields as dc_fields
from datetime import datetime, timezone
from typing import Any, Iterable, Optional

from surveysync.config.field_mapping import (
    DESCRIPTION_FIELDS,
    FACT_FIELDS,
    PARENT_DATE_FIELDS,
    PARENT_FIELDS,
)


def normalize_global_id(value: Any) -> Optional[str]:
    """Upper-case, brace-free form used as the local join key."""
    if value is None:
        return None
    text = str(value).strip().strip("{}").upper()
    return text or None


def epoch_ms_to_datetime(value: Any) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    try:
        return datetime.fromtimestamp(int(value) / 1000, tz=timezone.utc)
    except (TypeError, ValueError, OverflowError):
        return None


def _to_float(value: Any) -> Optional[float]:
    if value is None or value == "":
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _to_int(value: Any) -> Optional[int]:
    if value is None or value == "":
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _to_str(value: Any) -> Optional[str]:
    if value is None:
        return None
    return str(value)


def _split(attributes: dict, mapping: dict) -> tuple[dict, dict]:
    """Split attributes into mapped columns and leftovers (case-insensitive)."""
    by_upper = {str(k).upper(): k for k in attributes}
    mapped = {}
    used = set()
    for column, remote in mapping.items():
        key = by_upper.get(remote.upper())
        mapped[column] = attributes.get(key) if key is not None else None
        if key is not None:
            used.add(key)
    extra = {k: v for k, v in attributes.items() if k not in used}
    return mapped, extra


def join_values(values: Iterable[Optional[str]]) -> Optional[str]:
    parts = [str(v) for v in values if v is not None and str(v).strip() != ""]
    return " | ".join(parts) if parts else None


def _child_payloads(children: Iterable) -> list[dict]:
    # Accepts bare child records or (record, raw) pairs; order-independent
    payloads = []
    for child in children:
        if isinstance(child, tuple):
            child = child[0]
        payloads.append({f.name: getattr(child, f.name) for f in dc_fields(child)})
    payloads.sort(key=lambda p: json.dumps(p, sort_keys=True, default=str))
    return payloads


@dataclass
class ParentFields:
    globalid: str
    objectid: Optional[int] = None
    codigo_accion: Optional[str] = None
    otro_ca: Optional[str] = None
    fecha: Any = None
    nombre_supervisor: Optional[str] = None
    modalidad: Optional[str] = None
    actividad: Optional[str] = None
    componente: Optional[str] = None
    tipo_componente: Optional[str] = None
    instalacion_referencia: Optional[str] = None
    nom_pto_ppc: Optional[str] = None
    num_pto_muestreo: Optional[str] = None
    nom_pto_muestreo: Optional[str] = None
    norte: Optional[float] = None
    este: Optional[float] = None
    zona: Optional[str] = None
    altitud: Optional[float] = None
    created_user: Optional[str] = None
    created_date: Any = None
    last_edited_user: Optional[str] = None
    last_edited_date: Any = None
    extra: dict = field(default_factory=dict)
    remote_globalid: Optional[str] = None   # as the service spells it

    @classmethod
    def from_attributes(cls, attributes: dict) -> Optional["ParentFields"]:
        """Returns None when the feature carries no global id."""
        mapped, extra = _split(attributes, PARENT_FIELDS)
        remote_gid = mapped.pop("globalid")
        gid = normalize_global_id(remote_gid)
        if gid is None:
            return None
        return cls(
            globalid=gid,
            objectid=_to_int(mapped.pop("objectid")),
            norte=_to_float(mapped.pop("norte")),
            este=_to_float(mapped.pop("este")),
            altitud=_to_float(mapped.pop("altitud")),
            extra=extra,
            remote_globalid=str(remote_gid),
            **{k: (v if k in PARENT_DATE_FIELDS else _to_str(v)) for k, v in mapped.items()},
        )

    def fingerprint(self, descriptions: Iterable = (), facts: Iterable = ()) -> str:
        """SHA-256 over the flattened fields and both child sets.

        Related-table edits leave the parent feature untouched on the service,
        so the children have to be part of the hash.
        """
        payload = {f.name: getattr(self, f.name) for f in dc_fields(self) if f.name != "remote_globalid"}
        payload["descriptions"] = _child_payloads(descriptions)
        payload["facts"] = _child_payloads(facts)
        canonical = json.dumps(payload, sort_keys=True, default=str, ensure_ascii=False)
        return hashlib.sha256(canonical.encode("utf-8")).hexdigest()

    def columns(self) -> dict:
        """Column values for SurveyRecord, dates converted from epoch ms."""
        result = {}
        for f in dc_fields(self):
            if f.name in ("extra", "remote_globalid"):
                continue
            value = getattr(self, f.name)
            if f.name in PARENT_DATE_FIELDS:
                value = epoch_ms_to_datetime(value)
            result[f.name] = value
        result["extra"] = json.dumps(self.extra, default=str) if self.extra else None
        return result


@dataclass
class DescriptionFields:
    guid: Optional[str]
    objectid: Optional[int] = None
    descrip_1: Optional[str] = None
    extra: dict = field(default_factory=dict)

    @classmethod
    def from_attributes(cls, attributes: dict) -> "DescriptionFields":
        mapped, extra = _split(attributes, DESCRIPTION_FIELDS)
        return cls(
            guid=normalize_global_id(mapped["guid"]),
            objectid=_to_int(mapped["objectid"]),
            descrip_1=_to_str(mapped["descrip_1"]),
            extra=extra,
        )


@dataclass
class FactFields:
    guid: Optional[str]
    objectid: Optional[int] = None
    hecho_detec_1: Optional[str] = None
    descrip_2: Optional[str] = None
    extra: dict = field(default_factory=dict)

    @classmethod
    def from_attributes(cls, attributes: dict) -> "FactFields":
        mapped, extra = _split(attributes, FACT_FIELDS)
        return cls(
            guid=normalize_global_id(mapped["guid"]),
            objectid=_to_int(mapped["objectid"]),
            hecho_detec_1=_to_str(mapped["hecho_detec_1"]),
            descrip_2=_to_str(mapped["descrip_2"]),
            extra=extra,
        )
