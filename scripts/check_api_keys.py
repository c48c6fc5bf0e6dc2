# scripts/check_api_keys.py
"""Script to validate the external API keys used by the harvester"""

import asyncio
import aiohttp
import os
from dotenv import load_dotenv

load_dotenv()

TIMEOUT = aiohttp.ClientTimeout(total=30)

async def check_firecrawl_api():
    """Test the site mapper with a one-link map"""
    api_key = os.getenv("FIRECRAWL_API_KEY")
    if not api_key:
        return False, "API key not found"

    base_url = os.getenv("FIRECRAWL_BASE_URL", "https://api.firecrawl.dev").rstrip("/")
    try:
        async with aiohttp.ClientSession(timeout=TIMEOUT) as session:
            headers = {"Authorization": f"Bearer {api_key}", "Content-Type": "application/json"}
            payload = {"url": "https://example.com", "limit": 1}
            async with session.post(f"{base_url}/v1/map", json=payload, headers=headers) as response:
                if response.status == 200:
                    return True, "OK"
                elif response.status == 401:
                    return False, "Invalid API key"
                elif response.status == 402:
                    return False, "Payment required"
                else:
                    return False, f"HTTP {response.status}"
    except Exception as e:
        return False, str(e)

async def check_openai_api():
    """Test the classifier model endpoint"""
    api_key = os.getenv("OPENAI_API_KEY")
    if not api_key:
        return False, "API key not found"

    base_url = os.getenv("OPENAI_BASE_URL", "https://api.openai.com/v1").rstrip("/")
    model = os.getenv("CLASSIFIER_MODEL", "gpt-4o-mini")
    try:
        async with aiohttp.ClientSession(timeout=TIMEOUT) as session:
            async with session.get(
                f"{base_url}/models",
                headers={"Authorization": f"Bearer {api_key}"}
            ) as response:
                if response.status == 200:
                    data = await response.json()
                    models = [m.get("id") for m in data.get("data", [])]
                    if model in models:
                        return True, f"OK - {model} available"
                    return False, f"Model {model} not available to this key"
                elif response.status == 401:
                    return False, "Invalid API key"
                else:
                    return False, f"HTTP {response.status}"
    except Exception as e:
        return False, str(e)

async def check_perplexity_api():
    """Test the fallback answer engine"""
    api_key = os.getenv("PERPLEXITY_API_KEY")
    if not api_key:
        return False, "API key not found"

    base_url = os.getenv("PERPLEXITY_BASE_URL", "https://api.perplexity.ai").rstrip("/")
    payload = {
        "model": os.getenv("ANSWER_ENGINE_MODEL", "sonar-pro"),
        "messages": [{"role": "user", "content": "Reply with OK"}],
        "max_tokens": 5
    }
    try:
        async with aiohttp.ClientSession(timeout=TIMEOUT) as session:
            async with session.post(
                f"{base_url}/chat/completions",
                json=payload,
                headers={"Authorization": f"Bearer {api_key}"}
            ) as response:
                if response.status == 200:
                    return True, "OK"
                elif response.status == 401:
                    return False, "Invalid API key"
                elif response.status == 429:
                    return False, "Rate limit exceeded"
                else:
                    error_text = await response.text()
                    return False, f"HTTP {response.status}: {error_text[:100]}"
    except Exception as e:
        return False, str(e)

async def check_markdown_proxy():
    """Test the markdown reader proxy (works without a key at a lower rate limit)"""
    base_url = os.getenv("MARKDOWN_PROXY_URL", "https://r.jina.ai").rstrip("/")
    headers = {"Accept": "text/markdown", "X-Return-Format": "markdown"}
    api_key = os.getenv("JINA_API_KEY")
    if api_key:
        headers["Authorization"] = f"Bearer {api_key}"

    try:
        async with aiohttp.ClientSession(timeout=TIMEOUT) as session:
            async with session.get(f"{base_url}/https://example.com", headers=headers) as response:
                if response.status == 200:
                    return True, "OK" if api_key else "OK - anonymous (no JINA_API_KEY)"
                elif response.status == 429:
                    return False, "Rate limit exceeded"
                else:
                    return False, f"HTTP {response.status}"
    except Exception as e:
        return False, str(e)

async def check_apify_api():
    """Test the actor API and report the account plan"""
    api_key = os.getenv("APIFY_API_KEY")
    if not api_key:
        return False, "API key not found"

    base_url = os.getenv("APIFY_BASE_URL", "https://api.apify.com").rstrip("/")
    try:
        async with aiohttp.ClientSession(timeout=TIMEOUT) as session:
            async with session.get(
                f"{base_url}/v2/users/me",
                headers={"Authorization": f"Bearer {api_key}"}
            ) as response:
                if response.status == 200:
                    data = (await response.json()).get("data") or {}
                    plan = (data.get("plan") or {}).get("id", "unknown")
                    return True, f"OK - plan: {plan}"
                elif response.status == 401:
                    return False, "Invalid API key"
                else:
                    return False, f"HTTP {response.status}"
    except Exception as e:
        return False, str(e)

async def main():
    """Check all API connections"""
    print("🔍 Checking API Keys...\n")

    checks = [
        ("Firecrawl (site mapper)", check_firecrawl_api()),
        ("OpenAI (URL classifier)", check_openai_api()),
        ("Perplexity (fallback answer engine)", check_perplexity_api()),
        ("Jina Reader (markdown proxy)", check_markdown_proxy()),
        ("Apify (Twitter/LinkedIn actors)", check_apify_api())
    ]

    results = await asyncio.gather(*[check[1] for check in checks])

    print("📊 API Status Check Results:\n")
    for (name, _), (success, message) in zip(checks, results):
        status = "✅" if success else "❌"
        print(f"{status} {name}: {message}")

    all_apis_good = all(result[0] for result in results)

    print(f"\n{'🎉 All APIs are working!' if all_apis_good else '⚠️  Some APIs need attention'}")

    if not all_apis_good:
        print("\n💡 Troubleshooting tips:")
        print("- Check your .env file for correct API keys")
        print("- Blog and newsletter extraction fall back to the answer engine when the site mapper fails")
        print("- The LinkedIn actor needs a paid Apify plan (HTTP 403 on submit)")
        print("- Verify network connectivity to external APIs")
        print("- Check API key permissions and billing status")

if __name__ == "__main__":
    asyncio.run(main())
