# app/llm/tools/weather.py
from typing import Any, Dict, Optional

import httpx

from app.core.logger import get_logger
from app.llm.tools.base import Tool

logger = get_logger("WeatherTool")

FORECAST_URL = "https://api.open-meteo.com/v1/forecast"
GEOCODING_URL = "https://geocoding-api.open-meteo.com/v1/search"


async def _geocode_city(client: httpx.AsyncClient, city: str) -> Optional[Dict[str, float]]:
    response = await client.get(GEOCODING_URL, params={"name": city, "count": 1, "language": "en", "format": "json"})
    response.raise_for_status()
    results = response.json().get("results") or []
    if not results:
        return None
    return {"latitude": results[0]["latitude"], "longitude": results[0]["longitude"]}


async def get_weather(args: Dict[str, Any], client: Optional[httpx.AsyncClient] = None) -> Dict[str, Any]:
    """Current weather for a coordinate pair or a city name."""
    owns_client = client is None
    client = client or httpx.AsyncClient(timeout=10.0)
    try:
        latitude = args.get("latitude")
        longitude = args.get("longitude")
        city = args.get("city")
        if (latitude is None or longitude is None) and city:
            coords = await _geocode_city(client, city)
            if coords is None:
                return {"error": f"Could not find coordinates for '{city}'. Please check the city name."}
            latitude, longitude = coords["latitude"], coords["longitude"]
        if latitude is None or longitude is None:
            return {"error": "Either a city or both latitude and longitude are required."}

        response = await client.get(
            FORECAST_URL,
            params={
                "latitude": latitude,
                "longitude": longitude,
                "current": "temperature_2m",
                "hourly": "temperature_2m",
                "daily": "sunrise,sunset",
                "timezone": "auto",
            },
        )
        response.raise_for_status()
        data = response.json()
        if city:
            data["cityName"] = city
        return data
    finally:
        if owns_client:
            await client.aclose()


weather_tool = Tool(
    name="getWeather",
    description="Get the current weather at a location. You can provide either coordinates or a city name.",
    parameters={
        "type": "object",
        "properties": {
            "latitude": {"type": "number"},
            "longitude": {"type": "number"},
            "city": {"type": "string", "description": "City name (e.g., 'San Francisco', 'New York', 'London')"},
        },
    },
    execute=get_weather,
    needs_approval=True,
)
