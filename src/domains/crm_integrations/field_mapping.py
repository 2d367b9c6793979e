"""
Field mapping compiler.

A field mapping is a JSON object of ``remote field -> value`` where each value
is either literal text or exactly one placeholder token. Mappings are compiled
once into tagged terms so that sending an invoice is a single lookup pass.
"""

import json
import logging
from collections import OrderedDict
from datetime import datetime
from typing import Any, Dict, List, Literal, Mapping, Optional, Tuple, Union

from pydantic import BaseModel

from .context import SyncContext, resolve_token
from .exceptions import FieldMappingError
from .placeholders import PLACEHOLDERS, PlaceholderCatalog, format_token, parse_token

logger = logging.getLogger(__name__)


class LiteralField(BaseModel):
    """Value sent verbatim."""

    kind: Literal["literal"] = "literal"
    text: str


class PlaceholderField(BaseModel):
    """Value substituted from the sync context."""

    kind: Literal["placeholder"] = "placeholder"
    token: str  # canonical "{{namespace.field}}"
    name: str  # "namespace.field"


MappingTerm = Union[LiteralField, PlaceholderField]


class CompiledMapping(BaseModel):
    """Ordered remote field -> term mapping."""

    fields: Dict[str, MappingTerm]

    @property
    def placeholders(self) -> List[str]:
        """Tokens referenced by this mapping, in field order."""
        return [
            term.token
            for term in self.fields.values()
            if isinstance(term, PlaceholderField)
        ]

    def resolve(
        self,
        context: SyncContext,
        static_fields: Optional[Mapping[str, str]] = None,
    ) -> Dict[str, str]:
        """
        Build the outbound body: static fields first, mapped fields on top.

        Raises:
            FieldMappingError: If any placeholder has no value in the context
        """
        body: Dict[str, str] = dict(static_fields or {})
        missing: List[str] = []

        for field, term in self.fields.items():
            if isinstance(term, LiteralField):
                body[field] = term.text
                continue

            value = resolve_token(term.name, context)
            if value is None:
                missing.append(f"{field} <- {term.token}")
                continue
            body[field] = value

        if missing:
            raise FieldMappingError(
                "Field mapping references values missing for this invoice: "
                + ", ".join(missing)
            )

        return body


class FieldMappingCompiler:
    """Compiles raw mapping JSON against a placeholder catalog."""

    def __init__(self, catalog: PlaceholderCatalog = PLACEHOLDERS):
        self.catalog = catalog

    def compile(self, raw: Union[str, Mapping[str, Any], None]) -> CompiledMapping:
        """
        Compile a stored mapping.

        Args:
            raw: Mapping JSON text, or an already decoded mapping

        Returns:
            CompiledMapping with one term per remote field

        Raises:
            FieldMappingError: On invalid JSON, non-string values or unknown tokens
        """
        mapping = self._decode(raw)
        fields: Dict[str, MappingTerm] = {}
        unknown: List[str] = []

        for field, value in mapping.items():
            if not isinstance(value, str):
                raise FieldMappingError(
                    f"Field mapping value for '{field}' must be a string"
                )

            name = parse_token(value)
            if name is None:
                # Text that only contains "{{...}}" somewhere is still literal
                fields[field] = LiteralField(text=value)
                continue

            token = format_token(name)
            if token not in self.catalog:
                unknown.append(f"{field}: {value}")
                continue
            fields[field] = PlaceholderField(token=token, name=name)

        if unknown:
            raise FieldMappingError(
                "Unknown placeholder in field mapping: " + ", ".join(unknown)
            )

        compiled = CompiledMapping(fields=fields)
        logger.debug(
            f"Compiled field mapping: {len(fields)} fields, "
            f"{len(compiled.placeholders)} placeholders"
        )
        return compiled

    def _decode(self, raw: Union[str, Mapping[str, Any], None]) -> Mapping[str, Any]:
        if raw is None or raw == "":
            return {}
        if isinstance(raw, str):
            try:
                data = json.loads(raw)
            except json.JSONDecodeError as e:
                raise FieldMappingError(f"Field mapping is not valid JSON: {e}")
        else:
            data = raw

        if not isinstance(data, Mapping):
            raise FieldMappingError("Field mapping must be a JSON object")
        return data


def compile_mapping(raw: Union[str, Mapping[str, Any], None]) -> CompiledMapping:
    """Compile a mapping against the default placeholder catalog."""
    return FieldMappingCompiler().compile(raw)


_CacheEntry = Tuple[Optional[datetime], str, CompiledMapping]


class CompiledMappingCache:
    """
    Compiled mappings per integration, reused until the integration changes.

    An entry is valid for the integration's ``updatedAt`` stamp and raw mapping
    text; anything else recompiles. The least recently used entries are
    evicted beyond ``maxsize`` integrations.
    """

    def __init__(self, maxsize: int = 256) -> None:
        self.maxsize = maxsize
        self._entries: "OrderedDict[str, _CacheEntry]" = OrderedDict()

    def get(
        self, integration_id: str, updated_at: Optional[datetime], raw: str
    ) -> CompiledMapping:
        """
        Raises:
            FieldMappingError: If the mapping does not compile
        """
        entry = self._entries.get(integration_id)
        if entry is not None and entry[0] == updated_at and entry[1] == raw:
            self._entries.move_to_end(integration_id)
            return entry[2]

        mapping = compile_mapping(raw)
        self._entries[integration_id] = (updated_at, raw, mapping)
        self._entries.move_to_end(integration_id)
        while len(self._entries) > self.maxsize:
            self._entries.popitem(last=False)
        logger.debug(f"Compiled field mapping for CRM integration {integration_id}")
        return mapping

    def __len__(self) -> int:
        return len(self._entries)


compiled_mappings = CompiledMappingCache()
