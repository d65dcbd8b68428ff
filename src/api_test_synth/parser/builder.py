"""Endpoint model builder.

Merges adapter output, resolved schemas and auth metadata into one
EndpointDescriptor per (method, path template).
"""

import logging
import re

from api_test_synth.errors import ConflictError
from api_test_synth.parser.base import (
    METHOD_ORDER,
    AuthMetadata,
    AuthRequirement,
    EndpointDescriptor,
    FieldSet,
    FieldType,
    HttpMethod,
    PathParam,
    RawEndpoint,
)

logger = logging.getLogger(__name__)

PAGINATION_PARAM_NAMES = {"page", "size", "limit", "offset", "page_size", "per_page", "pagesize"}

_PLACEHOLDER_RE = re.compile(r"\{([^}/]+)\}")
_COMPARED = ("auth", "request_schema", "response_schemas", "declared_status_codes",
             "path_params", "query_params", "content_type")


def resolve_auth(raw: RawEndpoint, auth_metadata: AuthMetadata) -> AuthRequirement:
    """Method-level override > class-level > global default > NONE."""
    if raw.method_auth is not None:
        return raw.method_auth
    if raw.class_auth is not None:
        return raw.class_auth
    return auth_metadata.global_default


class EndpointModelBuilder:
    """Builds the deduplicated descriptor set."""

    def build(
        self,
        raw_endpoints: list[RawEndpoint],
        field_sets: dict[str, FieldSet],
        auth_metadata: AuthMetadata,
    ) -> list[EndpointDescriptor]:
        """Return descriptors ordered by path then method.

        Raises ConflictError listing every identity declared twice with
        different metadata.
        """
        seen: dict[tuple[str, str], tuple[EndpointDescriptor, RawEndpoint]] = {}
        conflicts = []
        for raw in raw_endpoints:
            descriptor = self.describe(raw, field_sets, auth_metadata)
            existing = seen.get(descriptor.identity)
            if existing is None:
                seen[descriptor.identity] = (descriptor, raw)
                continue
            differences = [name for name in _COMPARED if getattr(existing[0], name) != getattr(descriptor, name)]
            if differences:
                conflicts.append((descriptor.label, existing[1].site, raw.site, "differs in " + ", ".join(differences)))
            else:
                logger.debug("merged duplicate declaration of %s at %s", descriptor.label, raw.site)

        if conflicts:
            raise ConflictError(conflicts)

        return sorted(
            (d for d, _ in seen.values()),
            key=lambda d: (d.path_template, METHOD_ORDER[d.method]),
        )

    def describe(self, raw: RawEndpoint, field_sets: dict[str, FieldSet], auth_metadata: AuthMetadata) -> EndpointDescriptor:
        request_schema = field_sets.get(raw.request_schema_ref) if raw.request_schema_ref else None
        statuses = set(raw.status_codes)
        if not any(200 <= s < 300 for s in statuses):
            statuses.add(200)
        statuses = tuple(sorted(statuses))

        response_schemas = {}
        if raw.response_schema_ref and raw.response_schema_ref in field_sets:
            success = sorted(s for s in statuses if 200 <= s < 300) or [200]
            response_schemas[success[0]] = field_sets[raw.response_schema_ref]

        return EndpointDescriptor(
            method=raw.method,
            path_template=raw.path_template,
            path_params=self._path_params(raw),
            query_params=raw.query_params,
            request_schema=request_schema,
            response_schemas=response_schemas,
            auth=resolve_auth(raw, auth_metadata),
            declared_status_codes=statuses,
            content_type=raw.content_type,
            paginated=self._is_paginated(raw),
            handler=raw.handler,
            site=raw.site,
        )

    @staticmethod
    def _path_params(raw: RawEndpoint) -> tuple[PathParam, ...]:
        """Path params in template order; names missing from the adapter default to STRING."""
        declared = {p.name: p for p in raw.path_params}
        return tuple(
            declared.get(name, PathParam(name=name, type=FieldType.STRING))
            for name in _PLACEHOLDER_RE.findall(raw.path_template)
        )

    @staticmethod
    def _is_paginated(raw: RawEndpoint) -> bool:
        if raw.method != HttpMethod.GET or raw.path_template.endswith("}"):
            return False
        if raw.response_is_page:
            return True
        names = {p.name.lower() for p in raw.query_params}
        return bool(names & PAGINATION_PARAM_NAMES)
