from __future__ import annotations

# Lightweight HubSpot CRM REST client helpers.

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Mapping, Optional
from urllib.parse import quote

import httpx
from pydantic import BaseModel, ConfigDict, Field

from hubspot_mcp.formatting import convert_datetime_fields, format_engagement

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://api.hubapi.com"

COMPANY_PROPERTIES = ["name", "domain", "website", "phone", "industry", "hs_lastmodifieddate"]
CONTACT_PROPERTIES = [
    "firstname",
    "lastname",
    "email",
    "phone",
    "company",
    "hs_lastmodifieddate",
    "lastmodifieddate",
]

# Page sizes accepted by the associations and legacy engagements endpoints.
ASSOCIATIONS_PAGE_SIZE = 500
ENGAGEMENTS_PAGE_SIZE = 100


class HubSpotError(RuntimeError):
    """Raised when the HubSpot API returns a non-successful response."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class CrmObject(BaseModel):
    """A contact, company or other CRM v3 object."""

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    id: str
    properties: dict[str, Any] = Field(default_factory=dict)
    created_at: Optional[datetime] = Field(default=None, alias="createdAt")
    updated_at: Optional[datetime] = Field(default=None, alias="updatedAt")
    archived: bool = False


class SearchResponse(BaseModel):
    total: int = 0
    results: list[CrmObject] = Field(default_factory=list)


class AssociationResult(BaseModel):
    model_config = ConfigDict(coerce_numbers_to_str=True)

    to_object_id: str = Field(alias="toObjectId")


class AssociationPage(BaseModel):
    results: list[AssociationResult] = Field(default_factory=list)
    paging: dict[str, Any] = Field(default_factory=dict)

    @property
    def next_after(self) -> str | None:
        return (self.paging.get("next") or {}).get("after")


class RecentEngagementsPage(BaseModel):
    results: list[dict[str, Any]] = Field(default_factory=list)
    has_more: bool = Field(default=False, alias="hasMore")
    offset: int = 0
    total: int = 0


def _dump(record: CrmObject) -> dict[str, Any]:
    return convert_datetime_fields(record.model_dump(by_alias=True, exclude_none=True))


def _path_segment(value: Any) -> str:
    """Escape an ID for use as a single URL path segment."""
    # Dots are encoded too so "." and ".." cannot be collapsed into a parent path.
    return quote(str(value), safe="").replace(".", "%2E")


def _modified_at(record: CrmObject) -> datetime:
    if record.updated_at is None:
        return datetime.min.replace(tzinfo=timezone.utc)
    if record.updated_at.tzinfo is None:
        return record.updated_at.replace(tzinfo=timezone.utc)
    return record.updated_at


class HubSpotClient:
    """Async client wrapping the handful of HubSpot CRM endpoints exposed as tools."""

    def __init__(
        self,
        access_token: str,
        *,
        base_url: str = DEFAULT_BASE_URL,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        if not access_token:
            raise ValueError("HubSpot access token is required.")

        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            headers={
                "Authorization": f"Bearer {access_token}",
                "Content-Type": "application/json",
                "Accept": "application/json",
            },
            timeout=timeout,
            transport=transport,
        )

    @property
    def client(self) -> httpx.AsyncClient:
        return self._client

    async def close(self) -> None:
        await self._client.aclose()

    async def request(
        self,
        method: str,
        path: str,
        *,
        params: Optional[Mapping[str, Any]] = None,
        json_body: Optional[Mapping[str, Any]] = None,
    ) -> Any:
        """Execute an HTTP request and raise HubSpotError on failure."""
        logger.debug("HubSpot %s %s", method, path)
        try:
            response = await self._client.request(
                method,
                path,
                params=params,
                json=json_body,
            )
        except httpx.HTTPError as exc:
            raise HubSpotError(f"Request to {path} failed: {exc}") from exc
        if response.status_code >= 400:
            try:
                payload = response.json()
            except ValueError:
                payload = {"message": response.text or "Unknown error"}
            detail = payload.get("message") if isinstance(payload, dict) else None
            raise HubSpotError(
                f"{detail or payload} (status {response.status_code})",
                status_code=response.status_code,
            )
        if response.status_code == 204 or not response.content:
            return {}
        if response.headers.get("Content-Type", "").startswith("application/json"):
            return response.json()
        return response.text

    async def _search(self, object_type: str, body: Mapping[str, Any]) -> SearchResponse:
        payload = await self.request("POST", f"/crm/v3/objects/{object_type}/search", json_body=body)
        return SearchResponse.model_validate(payload)

    async def _recent_objects(
        self,
        object_type: str,
        *,
        sort_property: str,
        properties: list[str],
        limit: int,
    ) -> list[dict[str, Any]]:
        response = await self._search(
            object_type,
            {
                "sorts": [{"propertyName": sort_property, "direction": "DESCENDING"}],
                "properties": properties,
                "limit": limit,
            },
        )
        records = sorted(response.results, key=_modified_at, reverse=True)
        return [_dump(record) for record in records]

    async def get_recent_companies(self, limit: int = 10) -> list[dict[str, Any]]:
        """Return the ``limit`` most recently modified companies."""
        return await self._recent_objects(
            "companies",
            sort_property="hs_lastmodifieddate",
            properties=COMPANY_PROPERTIES,
            limit=limit,
        )

    async def get_recent_contacts(self, limit: int = 10) -> list[dict[str, Any]]:
        """Return the ``limit`` most recently modified contacts."""
        return await self._recent_objects(
            "contacts",
            sort_property="lastmodifieddate",
            properties=CONTACT_PROPERTIES,
            limit=limit,
        )

    async def _company_engagement_ids(self, company_id: str) -> list[str]:
        engagement_ids: list[str] = []
        after: str | None = None
        while True:
            params: dict[str, Any] = {"limit": ASSOCIATIONS_PAGE_SIZE}
            if after:
                params["after"] = after
            payload = await self.request(
                "GET",
                f"/crm/v4/objects/companies/{_path_segment(company_id)}/associations/engagements",
                params=params,
            )
            page = AssociationPage.model_validate(payload)
            engagement_ids.extend(result.to_object_id for result in page.results)
            after = page.next_after
            if not after:
                return engagement_ids

    async def get_engagement(self, engagement_id: str) -> dict[str, Any]:
        payload = await self.request(
            "GET",
            f"/engagements/v1/engagements/{_path_segment(engagement_id)}",
        )
        return format_engagement(payload)

    async def get_company_activity(self, company_id: str) -> list[dict[str, Any]]:
        """Return every engagement associated with a company, formatted by type."""
        engagement_ids = await self._company_engagement_ids(company_id)
        logger.info("Company %s has %d associated engagements", company_id, len(engagement_ids))
        activities = [await self.get_engagement(engagement_id) for engagement_id in engagement_ids]
        return convert_datetime_fields(activities)

    async def get_recent_engagements(self, days: int = 7, limit: int = 50) -> list[dict[str, Any]]:
        """Return engagements modified within the last ``days`` days, at most ``limit``."""
        since = datetime.now(timezone.utc) - timedelta(days=days)
        params: dict[str, Any] = {
            "since": int(since.timestamp() * 1000),
            "offset": 0,
        }
        engagements: list[dict[str, Any]] = []
        while len(engagements) < limit:
            params["count"] = min(ENGAGEMENTS_PAGE_SIZE, limit - len(engagements))
            payload = await self.request(
                "GET",
                "/engagements/v1/engagements/recent/modified",
                params=params,
            )
            page = RecentEngagementsPage.model_validate(payload)
            engagements.extend(format_engagement(record) for record in page.results)
            if not page.has_more or not page.results:
                break
            params["offset"] = page.offset
        return convert_datetime_fields(engagements[:limit])

    async def create_contact(
        self,
        firstname: str,
        lastname: str,
        email: Optional[str] = None,
        properties: Optional[Mapping[str, Any]] = None,
    ) -> dict[str, Any]:
        """Create a contact unless one with the same name (and company) exists."""
        filters = [
            {"propertyName": "firstname", "operator": "EQ", "value": firstname},
            {"propertyName": "lastname", "operator": "EQ", "value": lastname},
        ]
        company = (properties or {}).get("company")
        if company:
            filters.append({"propertyName": "company", "operator": "EQ", "value": company})

        existing = await self._search("contacts", {"filterGroups": [{"filters": filters}]})
        if existing.total > 0 and existing.results:
            logger.info("Contact %s %s already exists", firstname, lastname)
            return {"message": "Contact already exists", "contact": _dump(existing.results[0])}

        contact_properties: dict[str, Any] = {"firstname": firstname, "lastname": lastname}
        if email:
            contact_properties["email"] = email
        if properties:
            contact_properties.update(properties)

        payload = await self.request(
            "POST",
            "/crm/v3/objects/contacts",
            json_body={"properties": contact_properties},
        )
        return _dump(CrmObject.model_validate(payload))

    async def create_company(
        self,
        name: str,
        properties: Optional[Mapping[str, Any]] = None,
    ) -> dict[str, Any]:
        """Create a company unless one with the same name exists."""
        existing = await self._search(
            "companies",
            {"filterGroups": [{"filters": [{"propertyName": "name", "operator": "EQ", "value": name}]}]},
        )
        if existing.total > 0 and existing.results:
            logger.info("Company %s already exists", name)
            return {"message": "Company already exists", "company": _dump(existing.results[0])}

        company_properties: dict[str, Any] = {"name": name}
        if properties:
            company_properties.update(properties)

        payload = await self.request(
            "POST",
            "/crm/v3/objects/companies",
            json_body={"properties": company_properties},
        )
        return _dump(CrmObject.model_validate(payload))

    async def _exists(self, object_type: str, object_id: str) -> bool:
        try:
            await self.request("GET", f"/crm/v3/objects/{object_type}/{_path_segment(object_id)}")
        except HubSpotError as exc:
            if exc.status_code == 404:
                return False
            raise
        return True

    async def update_contact(self, contact_id: str, properties: Mapping[str, Any]) -> dict[str, Any]:
        """Update a contact's properties; a missing contact is reported, not raised."""
        if not await self._exists("contacts", contact_id):
            return {"message": "Contact not found, no update performed", "contactId": contact_id}

        await self.request(
            "PATCH",
            f"/crm/v3/objects/contacts/{_path_segment(contact_id)}",
            json_body={"properties": dict(properties)},
        )
        return convert_datetime_fields(
            {
                "message": "Contact updated successfully",
                "contactId": contact_id,
                "properties": dict(properties),
            }
        )

    async def update_company(self, company_id: str, properties: Mapping[str, Any]) -> dict[str, Any]:
        """Update a company's properties; a missing company is reported, not raised."""
        if not await self._exists("companies", company_id):
            return {"message": "Company not found, no update performed", "companyId": company_id}

        await self.request(
            "PATCH",
            f"/crm/v3/objects/companies/{_path_segment(company_id)}",
            json_body={"properties": dict(properties)},
        )
        return convert_datetime_fields(
            {
                "message": "Company updated successfully",
                "companyId": company_id,
                "properties": dict(properties),
            }
        )
