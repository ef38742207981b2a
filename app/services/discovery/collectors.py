"""
Data Collectors

Sources of raw business listings for a discovery sweep. Each collector
returns listings plus the API calls and cost it spent; failures raise
CollectorError so the pipeline can record them per source.

GooglePlacesCollector uses the Places API (New) Text Search endpoint with a
field mask limited to basic fields to keep the per-request price low.
"""

import re
import time
from abc import ABC, abstractmethod
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Optional

import httpx
import structlog
from pydantic import BaseModel, Field

from app.config import settings
from app.models.discovery import Coordinates, TargetingCriteria
from app.services.discovery.deadline import SweepDeadline
from app.services.discovery.errors import CollectorError
from app.services.monitoring.circuit_breakers import CircuitBreakerError, get_google_places_breaker

logger = structlog.get_logger(__name__)

NO_GEOGRAPHY_ERROR = "No geography configured: add target states or cities to the discovery profile"


class RawBusinessData(BaseModel):
    """One business listing as returned by a collector, before deduplication."""
    place_id: Optional[str] = None
    external_id: Optional[str] = None

    name: str
    industry: Optional[str] = None
    website: Optional[str] = None

    address: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    country: Optional[str] = None
    coordinates: Optional[Coordinates] = None

    phone: Optional[str] = None
    email: Optional[str] = None

    rating: Optional[float] = None
    review_count: Optional[int] = None
    business_status: Optional[str] = None  # OPERATIONAL, CLOSED_TEMPORARILY, CLOSED_PERMANENTLY
    types: List[str] = Field(default_factory=list)

    description: Optional[str] = None
    employee_count: Optional[int] = None
    year_founded: Optional[int] = None

    source: str
    source_url: Optional[str] = None
    fetched_at: float = Field(default_factory=time.time)

    @property
    def is_closed(self) -> bool:
        return bool(self.business_status and self.business_status.startswith("CLOSED"))

    @property
    def has_contact_channel(self) -> bool:
        return bool(self.phone or self.email or self.website)


class CollectorSearchResult(BaseModel):
    businesses: List[RawBusinessData] = Field(default_factory=list)
    source: str
    search_query: str = ""
    api_calls: int = 0
    cost_usd: float = 0.0
    errors: List[str] = Field(default_factory=list)


def _normalize(value: Optional[str], pattern: str = r"[^a-z0-9]") -> str:
    return re.sub(pattern, "", (value or "").lower())


def create_dedupe_key(business: RawBusinessData) -> str:
    """Place id when present, otherwise normalized name + city + state."""
    if business.place_id:
        return f"places:{business.place_id}"
    return (
        f"name:{_normalize(business.name)}:{_normalize(business.city)}:"
        f"{_normalize(business.state, r'[^a-z]')}"
    )


_FILLABLE_FIELDS = ("website", "phone", "email", "industry", "description", "employee_count", "year_founded")


def merge_business_data(records: List[RawBusinessData]) -> RawBusinessData:
    """
    Merge duplicate listings into one.

    The first record is the base. Missing fields are filled from later
    records, and the rating comes from whichever record has more reviews.

    Raises:
        ValueError: If records is empty
    """
    if not records:
        raise ValueError("Cannot merge an empty list of business records")

    merged = records[0].model_copy(deep=True)
    for record in records[1:]:
        for field in _FILLABLE_FIELDS:
            if not getattr(merged, field) and getattr(record, field):
                setattr(merged, field, getattr(record, field))

        if record.review_count and (not merged.review_count or record.review_count > merged.review_count):
            merged.rating = record.rating
            merged.review_count = record.review_count

    return merged


class DataCollector(ABC):
    """Interface every lead source implements."""

    source_type: str = "unknown"
    name: str = "Unknown"

    @abstractmethod
    def is_configured(self) -> bool:
        """True if credentials are present and the collector can run."""

    @abstractmethod
    def search(
        self,
        criteria: TargetingCriteria,
        max_results: int,
        max_queries: int = 3,
        deadline: Optional[SweepDeadline] = None
    ) -> CollectorSearchResult:
        """
        Find businesses matching the targeting criteria.

        Raises:
            CollectorError: If the source returned nothing usable
            SweepTimeoutError: If the sweep deadline passes
        """


# Google place types mapped to industry labels
_TYPE_TO_INDUSTRY = {
    "plumber": "Plumbing",
    "electrician": "Electrical",
    "hvac_contractor": "HVAC",
    "roofing_contractor": "Roofing",
    "general_contractor": "Construction",
    "restaurant": "Restaurant",
    "store": "Retail",
    "doctor": "Healthcare",
    "dentist": "Healthcare",
    "car_dealer": "Automotive",
    "car_repair": "Automotive",
    "lawyer": "Legal Services",
    "accounting": "Financial Services",
    "bank": "Financial Services",
    "real_estate_agency": "Real Estate",
    "insurance_agency": "Insurance",
    "moving_company": "Moving & Logistics",
    "gym": "Fitness",
    "hotel": "Hospitality",
    "school": "Education",
}

_FIELD_MASK = ",".join([
    "places.id",
    "places.displayName",
    "places.formattedAddress",
    "places.addressComponents",
    "places.location",
    "places.rating",
    "places.userRatingCount",
    "places.websiteUri",
    "places.nationalPhoneNumber",
    "places.types",
    "places.businessStatus",
    "places.primaryType",
    "places.primaryTypeDisplayName",
])


class GooglePlacesCollector(DataCollector):
    """
    Google Places Text Search collector.

    Usage:
        collector = GooglePlacesCollector()
        if collector.is_configured():
            result = collector.search(profile.targeting_criteria, max_results=20)
    """

    source_type = "google_places"
    name = "Google Places"
    API_URL = "https://places.googleapis.com/v1/places:searchText"

    def __init__(
        self,
        api_key: Optional[str] = None,
        client: Optional[httpx.Client] = None,
        cost_per_call: Optional[float] = None,
        timeout_seconds: Optional[float] = None
    ):
        """
        Args:
            api_key: Places API key (defaults to settings.google_places_api_key)
            client: httpx client owned by the caller; without one, each
                search opens and closes its own
            cost_per_call: USD per Text Search request (defaults to settings)
            timeout_seconds: Per-request timeout (defaults to settings)
        """
        self.api_key = api_key if api_key is not None else settings.google_places_api_key
        self.client = client
        self.cost_per_call = (
            cost_per_call if cost_per_call is not None else settings.google_places_cost_per_call
        )
        self.timeout_seconds = (
            timeout_seconds if timeout_seconds is not None else settings.google_places_timeout_seconds
        )

    def is_configured(self) -> bool:
        return bool(self.api_key)

    @contextmanager
    def _http_client(self) -> Iterator[httpx.Client]:
        if self.client is not None:
            yield self.client
            return
        with httpx.Client() as client:
            yield client

    def build_search_queries(self, criteria: TargetingCriteria) -> List[str]:
        """
        Industry x location queries such as "Plumbing in Houston, TX".

        Up to 3 cities (paired with the first state) or, without cities, up to
        3 states; up to 5 industries. No geography yields no queries, since a
        location-free search is too broad to be useful.
        """
        geography = criteria.geography
        locations: List[str] = []
        if geography.cities:
            state = geography.states[0] if geography.states else ""
            locations = [f"{city}, {state}" if state else city for city in geography.cities[:3]]
        elif geography.states:
            locations = list(geography.states[:3])

        if not locations:
            return []

        industries = criteria.industries[:5] or ["businesses"]
        return [f"{industry} in {location}" for industry in industries for location in locations]

    def search(
        self,
        criteria: TargetingCriteria,
        max_results: int,
        max_queries: int = 3,
        deadline: Optional[SweepDeadline] = None
    ) -> CollectorSearchResult:
        log = logger.bind(collector=self.source_type)

        if not self.is_configured():
            raise CollectorError(self.name, "GOOGLE_PLACES_API_KEY is not configured")

        all_queries = self.build_search_queries(criteria)
        if not all_queries:
            log.warning("places_no_queries", reason="no_geography")
            return CollectorSearchResult(source=self.source_type, errors=[NO_GEOGRAPHY_ERROR])

        queries = all_queries[:max(0, max_queries)]
        if not queries:
            log.warning("places_no_queries", reason="no_call_budget")
            return CollectorSearchResult(source=self.source_type)

        businesses: List[RawBusinessData] = []
        errors: List[str] = []
        api_calls = 0

        with self._http_client() as client:
            for query in queries:
                if len(businesses) >= max_results:
                    break
                if deadline:
                    deadline.check("collect")

                api_calls += 1
                try:
                    places = self._execute_search(client, query, max_results - len(businesses), deadline)
                except CircuitBreakerError:
                    errors.append(f"{query}: Google Places circuit breaker open")
                    log.error("places_circuit_open", query=query)
                    break
                except (httpx.HTTPError, ValueError) as e:
                    errors.append(f"{query}: {e}")
                    log.warning("places_query_failed", query=query, error=str(e))
                    continue

                businesses.extend(self.convert_place(place) for place in places)

        cost = round(api_calls * self.cost_per_call, 6)

        if errors and len(errors) >= api_calls:
            raise CollectorError(self.name, "; ".join(errors), api_calls=api_calls, cost_usd=cost)

        log.info(
            "places_search_completed",
            queries=len(queries),
            api_calls=api_calls,
            businesses=len(businesses),
            failed_queries=len(errors)
        )
        return CollectorSearchResult(
            businesses=businesses[:max_results],
            source=self.source_type,
            search_query=" | ".join(queries[:api_calls]),
            api_calls=api_calls,
            cost_usd=cost,
            errors=errors
        )

    def _execute_search(
        self,
        client: httpx.Client,
        query: str,
        max_results: int,
        deadline: Optional[SweepDeadline]
    ) -> List[Dict[str, Any]]:
        timeout = deadline.bounded_timeout(self.timeout_seconds) if deadline else self.timeout_seconds

        def post() -> httpx.Response:
            # Inside the breaker so HTTP error statuses count as failures
            resp = client.post(self.API_URL, json=payload, headers=headers, timeout=timeout)
            resp.raise_for_status()
            return resp

        payload = {
            "textQuery": query,
            "pageSize": min(max_results, 20),  # API maximum per request
            "languageCode": "en",
        }
        headers = {
            "Content-Type": "application/json",
            "X-Goog-Api-Key": self.api_key,
            "X-Goog-FieldMask": _FIELD_MASK,
        }
        response = get_google_places_breaker().call(post)
        return response.json().get("places", [])

    def convert_place(self, place: Dict[str, Any]) -> RawBusinessData:
        city = state = ""
        country = "US"
        for component in place.get("addressComponents", []):
            types = component.get("types", [])
            if "locality" in types:
                city = component.get("longText", "")
            elif "administrative_area_level_1" in types:
                state = component.get("shortText", "")
            elif "country" in types:
                country = component.get("shortText", country)

        location = place.get("location")
        coordinates = None
        if location and "latitude" in location and "longitude" in location:
            coordinates = Coordinates(lat=location["latitude"], lng=location["longitude"])

        place_id = place.get("id")
        return RawBusinessData(
            place_id=place_id,
            name=(place.get("displayName") or {}).get("text") or "Unknown Business",
            industry=self._infer_industry(
                place.get("types", []),
                place.get("primaryType"),
                (place.get("primaryTypeDisplayName") or {}).get("text")
            ),
            website=place.get("websiteUri"),
            address=place.get("formattedAddress"),
            city=city or None,
            state=state or None,
            country=country,
            coordinates=coordinates,
            phone=place.get("nationalPhoneNumber"),
            rating=place.get("rating"),
            review_count=place.get("userRatingCount"),
            business_status=place.get("businessStatus"),
            types=place.get("types", []),
            source=self.source_type,
            source_url=f"https://www.google.com/maps/place/?q=place_id:{place_id}" if place_id else None
        )

    @staticmethod
    def _infer_industry(types: List[str], primary_type: Optional[str], primary_display: Optional[str]) -> str:
        if primary_display:
            return primary_display
        if primary_type and primary_type in _TYPE_TO_INDUSTRY:
            return _TYPE_TO_INDUSTRY[primary_type]
        for place_type in types:
            if place_type in _TYPE_TO_INDUSTRY:
                return _TYPE_TO_INDUSTRY[place_type]
        if types:
            return types[0].replace("_", " ").title()
        return "General Business"


def get_default_collectors() -> List[DataCollector]:
    """Collectors that have credentials configured."""
    collectors: List[DataCollector] = [GooglePlacesCollector()]
    return [collector for collector in collectors if collector.is_configured()]
