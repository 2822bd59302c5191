"""Google Places error taxonomy and the mapper from transport failures."""

from typing import Optional

import httpx

from leadflow.core.exceptions import AppError


class ProviderError(AppError):
    """Base exception for places provider failures."""

    status_code = 502
    code = "GOOGLE_MAPS_API_ERROR"


class PlacesTimeoutError(ProviderError):
    """Raised when a Places request times out."""

    status_code = 504
    code = "GOOGLE_MAPS_TIMEOUT"


class PlacesQuotaExceededError(ProviderError):
    """Raised when the Places API rejects a request for quota."""

    status_code = 429
    code = "GOOGLE_MAPS_QUOTA_EXCEEDED"


class PlacesRequestDeniedError(ProviderError):
    """Raised when the key is rejected. Retrying will not help."""

    status_code = 502
    code = "GOOGLE_MAPS_REQUEST_DENIED"
    retryable = False


class PlacesUpstreamError(ProviderError):
    """Raised on a 5xx from the Places API."""

    status_code = 502
    code = "GOOGLE_MAPS_UPSTREAM_ERROR"


class PlacesNoResultsError(ProviderError):
    status_code = 404
    code = "GOOGLE_MAPS_NO_RESULTS"
    retryable = False


class PlacesConfigError(ProviderError):
    """Raised when the Places client cannot be used as configured."""

    status_code = 500
    code = "GOOGLE_MAPS_NOT_CONFIGURED"
    retryable = False


class PlacesInvalidQueryError(PlacesConfigError):
    """Raised for a missing or too-short search query."""

    status_code = 400
    code = "GOOGLE_MAPS_INVALID_QUERY"


def _upstream_message(exc: BaseException) -> str:
    response: Optional[httpx.Response] = getattr(exc, "response", None)
    if response is None:
        return str(exc)
    try:
        return f"{exc} {response.text}"
    except (httpx.ResponseNotRead, UnicodeDecodeError):
        return str(exc)


def map_places_api_error(exc: BaseException) -> ProviderError:
    """Translate any failure from a Places call into a ProviderError."""
    if isinstance(exc, ProviderError):
        return exc

    if isinstance(exc, httpx.TimeoutException) or "timeout" in str(exc).lower():
        return PlacesTimeoutError("Google Maps API timeout")

    if isinstance(exc, httpx.HTTPStatusError):
        status = exc.response.status_code
        if status == 429:
            return PlacesQuotaExceededError("Google Maps API quota exceeded")
        if status == 403:
            return PlacesRequestDeniedError("Google Maps API request denied")
        if status >= 500:
            return PlacesUpstreamError("Google Maps API upstream error")

    message = _upstream_message(exc)
    if "OVER_QUERY_LIMIT" in message:
        return PlacesQuotaExceededError("Google Maps API quota exceeded")
    if "REQUEST_DENIED" in message:
        return PlacesRequestDeniedError("Google Maps API request denied")
    if "ZERO_RESULTS" in message:
        return PlacesNoResultsError("No results found from Google Maps")

    return ProviderError("Google Maps integration failed")
