import json

from fastmcp import FastMCP

mcp = FastMCP("local-tools")

""" Shouldn't add any print statements in this file, stdout carries the MCP stdio protocol """

# Mock data, useful for exercising tool calls end to end
WEATHER = {
    "new york": {"temperature": 72, "condition": "Sunny", "humidity": 45},
    "london": {"temperature": 62, "condition": "Cloudy", "humidity": 80},
    "tokyo": {"temperature": 78, "condition": "Rainy", "humidity": 90},
    "sydney": {"temperature": 85, "condition": "Clear", "humidity": 50},
}


@mcp.tool()
async def echo(text: str) -> str:
    """Echo back the input.

    Args:
        text: Text to echo back
    """
    return text


@mcp.tool()
async def add(a: float, b: float) -> float:
    """Add two numbers.

    Args:
        a: First number
        b: Second number
    """
    return a + b


@mcp.tool()
async def weather(location: str) -> str:
    """Get weather information for a location.

    Args:
        location: Location to get weather for

    Returns:
        str: JSON object with temperature, condition and humidity, or an error message.
    """
    found = WEATHER.get(location.strip().lower())
    if found is None:
        return json.dumps({"error": f"Weather information not available for {location}"})
    return json.dumps(found)


@mcp.resource("info://server-info")
async def server_info() -> str:
    """Information about the server"""
    return json.dumps(
        {
            "name": "local-tools",
            "description": "Local tools for testing",
            "tools": ["echo", "add", "weather"],
            "resources": ["info://server-info"],
        }
    )


if __name__ == "__main__":
    mcp.run(transport="stdio")
