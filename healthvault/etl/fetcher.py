"""
Resource fetchers: read one patient's resources of one type from a provider's
FHIR R4 API.

Fetchers are pure reads. A transport, HTTP or auth failure becomes a
FetchError for that type; an empty search result is an empty list. Retrying
is left to the caller.
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any, Iterable, Protocol
from urllib.parse import urljoin

import requests

from healthvault.config import settings
from healthvault.etl.errors import FetchError
from healthvault.schemas.resources import FhirResource, ResourceType, parse_resource

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SessionHandle:
    """What the authorization flow hands the core: where to read, as whom, for whom."""

    fhir_server: str
    patient_external_id: str
    access_token: str | None = None

    def __repr__(self) -> str:
        # never print the credential
        return f"SessionHandle(fhir_server={self.fhir_server!r}, patient={self.patient_external_id!r})"


class ResourceFetcher(Protocol):
    """Contract for per-type readers against an external clinical source."""

    def fetch(
        self,
        handle: SessionHandle,
        resource_type: ResourceType,
        patient_external_id: str | None = None,
    ) -> list[FhirResource]:
        """Return every resource of one type for the patient, or raise FetchError."""


class FhirResourceFetcher:
    """
    Reads resources over FHIR REST.

    Patient is read directly (``GET Patient/{id}``); every other type is a
    search scoped to the patient, following Bundle ``next`` links up to
    ``max_pages``.
    """

    def __init__(
        self,
        http: requests.Session | None = None,
        timeout: float | None = None,
        max_pages: int | None = None,
    ):
        self._http = http or requests.Session()
        self.timeout = timeout if timeout is not None else settings.FHIR_REQUEST_TIMEOUT
        self.max_pages = max_pages if max_pages is not None else settings.FHIR_MAX_PAGES

    def _headers(self, handle: SessionHandle) -> dict[str, str]:
        headers = {"Accept": "application/fhir+json"}
        if handle.access_token:
            headers["Authorization"] = f"Bearer {handle.access_token}"
        return headers

    def _get_json(
        self,
        url: str,
        handle: SessionHandle,
        resource_type: ResourceType,
        params: dict[str, str] | None = None,
    ) -> dict[str, Any]:
        try:
            response = self._http.get(
                url, params=params, headers=self._headers(handle), timeout=self.timeout
            )
            response.raise_for_status()
            body = response.json()
        except requests.RequestException as exc:
            raise FetchError(resource_type, exc) from exc
        except ValueError as exc:
            raise FetchError(resource_type, f"invalid JSON from {url}") from exc
        if not isinstance(body, dict):
            raise FetchError(resource_type, f"unexpected response body from {url}")
        if body.get("resourceType") == "OperationOutcome":
            raise FetchError(resource_type, _outcome_message(body))
        return body

    def fetch(
        self,
        handle: SessionHandle,
        resource_type: ResourceType,
        patient_external_id: str | None = None,
    ) -> list[FhirResource]:
        """Return every resource of ``resource_type`` for the patient."""
        patient_id = patient_external_id or handle.patient_external_id
        base = handle.fhir_server.rstrip("/") + "/"

        if resource_type is ResourceType.PATIENT:
            body = self._get_json(urljoin(base, f"Patient/{patient_id}"), handle, resource_type)
            return [_parse(body, resource_type)]

        url: str | None = urljoin(base, resource_type.value)
        params: dict[str, str] | None = {resource_type.patient_search_param: patient_id}
        resources: list[FhirResource] = []
        pages = 0
        while url and pages < self.max_pages:
            bundle = self._get_json(url, handle, resource_type, params)
            pages += 1
            entries = bundle.get("entry") or []
            if not isinstance(entries, list) or not isinstance(bundle.get("link") or [], list):
                raise FetchError(resource_type, f"malformed Bundle from {url}")
            for entry in entries:
                resource = entry.get("resource") if isinstance(entry, dict) else None
                # searchsets may include OperationOutcome or _include'd resources
                if isinstance(resource, dict) and resource.get("resourceType") == resource_type.value:
                    resources.append(_parse(resource, resource_type))
            url = _next_link(bundle)
            params = None  # the next link already carries the query
        if url:
            logger.warning(
                "Stopped paging %s for patient %s after %d pages", resource_type.value, patient_id, pages
            )

        logger.info("Fetched %d %s resources", len(resources), resource_type.value)
        return resources


def fetch_all(
    fetcher: ResourceFetcher,
    handle: SessionHandle,
    resource_types: Iterable[ResourceType],
    max_workers: int | None = None,
) -> tuple[dict[ResourceType, list[FhirResource]], dict[ResourceType, FetchError]]:
    """Fetch several types concurrently; failures are returned, not raised."""
    types = list(dict.fromkeys(resource_types))
    collections: dict[ResourceType, list[FhirResource]] = {}
    errors: dict[ResourceType, FetchError] = {}
    if not types:
        return collections, errors

    workers = max_workers or settings.MIGRATION_TYPE_WORKERS
    with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="fhir-fetch") as pool:
        futures = {rt: pool.submit(fetcher.fetch, handle, rt) for rt in types}
        for resource_type, future in futures.items():
            try:
                collections[resource_type] = future.result()
            except FetchError as exc:
                logger.error("Fetch failed for %s: %s", resource_type.value, exc.cause)
                errors[resource_type] = exc
            except Exception as exc:
                logger.exception("Unexpected failure fetching %s", resource_type.value)
                errors[resource_type] = FetchError(resource_type, exc)
    return collections, errors


def _parse(payload: dict[str, Any], resource_type: ResourceType) -> FhirResource:
    try:
        return parse_resource(payload)
    except ValueError as exc:
        raise FetchError(resource_type, f"malformed resource: {exc}") from exc


def _next_link(bundle: dict[str, Any]) -> str | None:
    for link in bundle.get("link") or []:
        if isinstance(link, dict) and link.get("relation") == "next":
            return link.get("url")
    return None


def _outcome_message(outcome: dict[str, Any]) -> str:
    issues = outcome.get("issue") or []
    messages = [
        issue.get("diagnostics") or issue.get("code") or "unknown issue"
        for issue in issues
        if isinstance(issue, dict)
    ]
    return "; ".join(messages) or "OperationOutcome without issues"
