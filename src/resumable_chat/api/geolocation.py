"""Best-effort request origin hints from edge headers."""

from urllib.parse import unquote

from fastapi import Request

from ..services.prompts import RequestHints


def geolocation(request: Request) -> RequestHints:
    headers = request.headers
    city = headers.get("x-vercel-ip-city")
    return RequestHints(
        latitude=headers.get("x-vercel-ip-latitude"),
        longitude=headers.get("x-vercel-ip-longitude"),
        city=unquote(city) if city else None,
        country=headers.get("x-vercel-ip-country"),
    )
