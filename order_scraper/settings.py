import os
import json

BOT_NAME = "order_history"

SPIDER_MODULES = ["order_scraper.spiders"]
NEWSPIDER_MODULE = "order_scraper.spiders"

ROBOTSTXT_OBEY = False

# Order-history pages throttle aggressively; keep this small.
CONCURRENT_REQUESTS = int(os.getenv("CONCURRENCY", "2"))
DOWNLOAD_DELAY = 1

# 429/503 are retried by the collector's own backoff, not by RetryMiddleware.
RETRY_HTTP_CODES = [500, 502, 504, 522, 524, 408]

# using playwright instead of scrapy's built-in downloader so the signed-in browser context is reused
DOWNLOAD_HANDLERS = {
    "http": "scrapy_playwright.handler.ScrapyPlaywrightDownloadHandler",
    "https": "scrapy_playwright.handler.ScrapyPlaywrightDownloadHandler",
}

# Required reactor for asyncio / Playwright
TWISTED_REACTOR = "twisted.internet.asyncioreactor.AsyncioSelectorReactor"

PLAYWRIGHT_BROWSER_TYPE = "chromium"

# Headless toggle (set HEADLESS=0 for headed / visible browser in env)
_headless_env = os.getenv("HEADLESS", "1").lower() in ("1", "true", "yes")

_DEFAULT_REAL_UA = (
    os.getenv(
        "USER_AGENT",
        "Mozilla/5.0 (Macintosh; Intel Mac OS X 13_5) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36",
    )
)

PLAYWRIGHT_LAUNCH_OPTIONS = {
    "headless": _headless_env,
    "args": [
        "--no-default-browser-check",
        "--disable-dev-shm-usage",
    ],
}

# Signed-in browser state (cookies) exported from a manual login; sign-in itself is not automated.
STORAGE_STATE_FILE = os.getenv("STORAGE_STATE", "playwright_storage_state.json")
# Bootstrap an empty storage_state file if missing so the context can start (requests will hit the sign-in page).
if not os.path.exists(STORAGE_STATE_FILE):
    try:
        with open(STORAGE_STATE_FILE, "w", encoding="utf-8") as _f:
            json.dump({"cookies": [], "origins": []}, _f)
    except OSError:
        pass

PLAYWRIGHT_CONTEXTS = {
    "default": {
        "user_agent": _DEFAULT_REAL_UA,
        "viewport": {"width": 1440, "height": 900},
        "locale": "en-US",
        "timezone_id": os.getenv("TZ", "America/New_York"),
        "storage_state": STORAGE_STATE_FILE,
    }
}

DEFAULT_REQUEST_HEADERS = {
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
    "Accept-Language": "en-US,en;q=0.9",
    "User-Agent": _DEFAULT_REAL_UA,
}

ITEM_PIPELINES = {"order_scraper.pipelines.OrderExportPipeline": 300}

OUTPUT_DIR = os.getenv("OUTPUT_DIR", "data")
STATE_DB = os.getenv("STATE_DB", "data/state.db")

# No wall-clock budget by default; set e.g. -s CLOSESPIDER_TIMEOUT=1800 to cancel long exports.
CLOSESPIDER_TIMEOUT = int(os.getenv("EXPORT_TIMEOUT", "0"))

PLAYWRIGHT_DEFAULT_NAVIGATION_TIMEOUT = 30000  # ms

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
