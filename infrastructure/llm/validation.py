"""API key validation for the Perplexity completion service."""

import httpx
from typing import Tuple

DEFAULT_BASE_URL = "https://api.perplexity.ai"


async def validate_api_key(
    api_key: str,
    base_url: str | None = None,
    model: str = "sonar-pro",
) -> Tuple[bool, str | None]:
    """Validate a Perplexity API key with a one-token completion.

    The service has no models listing endpoint, so the cheapest authenticated
    call is a minimal chat completion.

    Returns:
        (valid, error_message) tuple
    """
    if not api_key or not api_key.strip():
        return False, "API key is empty"

    url = f"{(base_url or DEFAULT_BASE_URL).rstrip('/')}/chat/completions"
    try:
        async with httpx.AsyncClient(timeout=10.0) as client:
            response = await client.post(
                url,
                headers={"Authorization": f"Bearer {api_key}"},
                json={
                    "model": model,
                    "max_tokens": 1,
                    "messages": [{"role": "user", "content": "ping"}],
                },
            )

            if response.status_code == 200:
                return True, None
            elif response.status_code in (401, 403):
                return False, "Invalid API key"
            else:
                return False, f"Validation failed: HTTP {response.status_code}"
    except httpx.TimeoutException:
        return False, "Validation timeout - please try again"
    except Exception as e:
        return False, f"Validation error: {str(e)}"
