import enum
from dataclasses import dataclass, field
from typing import Optional, Union

from playwright.async_api import Error as PlaywrightError
from playwright.async_api import TimeoutError as PlaywrightTimeoutError
from playwright.async_api import async_playwright

# Realistic desktop UA; the status page serves a different shell to headless/bot agents.
DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36"
)

DEFAULT_RENDER_TIMEOUT_MS = 90000

# Flags needed on Render/Docker style hosts
DEFAULT_BROWSER_ARGS = (
    "--no-sandbox",
    "--disable-setuid-sandbox",
    "--disable-dev-shm-usage",
    "--disable-accelerated-2d-canvas",
    "--no-first-run",
    "--no-zygote",
    "--disable-gpu",
)


@dataclass(frozen=True)
class SelectorPair:
    """Where a service name lives on the page and how to reach its status.

    ``status_selector=None`` means the status is the name element's next
    element sibling. Otherwise the status is the first match of
    ``status_selector`` inside the name element's parent.
    """
    name_selector: str
    status_selector: Optional[str] = None


# Both markups seen on status.bethesda.net so far, newest last.
DEFAULT_SELECTORS = (
    SelectorPair(".status-container > div:first-child"),
    SelectorPair(".component-container .name", ".component-status"),
)


@dataclass(frozen=True)
class ResolverConfig:
    render_timeout_ms: int = DEFAULT_RENDER_TIMEOUT_MS
    user_agent: str = DEFAULT_USER_AGENT
    # Status rows are filled in by XHR after load, so wait for the network to go quiet.
    wait_until: str = "networkidle"
    selectors: tuple[SelectorPair, ...] = DEFAULT_SELECTORS
    browser_args: tuple[str, ...] = DEFAULT_BROWSER_ARGS
    executable_path: Optional[str] = None


@dataclass(frozen=True)
class StatusQuery:
    target_service_name: str
    source_url: str


class FailureKind(enum.Enum):
    TIMEOUT = "timeout"
    RENDER_ENGINE_UNAVAILABLE = "render_engine_unavailable"
    NETWORK_ERROR = "network_error"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class Found:
    status_text: str


@dataclass(frozen=True)
class NotListed:
    target_service_name: str


@dataclass(frozen=True)
class Indeterminate:
    pass


@dataclass(frozen=True)
class Failure:
    kind: FailureKind
    detail: str = field(default="")


StatusResult = Union[Found, NotListed, Indeterminate, Failure]


# Runs inside the page. Returns [[name, status|null], ...] for every selector pair, in order.
EXTRACT_PAIRS_JS = """
(selectors) => {
    const clean = (el) => (el && el.textContent ? el.textContent.trim() : "");
    const pairs = [];
    for (const [nameSelector, statusSelector] of selectors) {
        for (const nameEl of document.querySelectorAll(nameSelector)) {
            let statusEl = null;
            if (statusSelector) {
                const container = nameEl.parentElement;
                statusEl = container ? container.querySelector(statusSelector) : null;
            } else {
                statusEl = nameEl.nextElementSibling;
            }
            const status = clean(statusEl);
            pairs.push([clean(nameEl), status || null]);
        }
    }
    return pairs;
}
"""


class RenderEngineUnavailable(Exception):
    pass


class ExtractionFailed(Exception):
    pass


def match_status(pairs, target_service_name: str) -> StatusResult:
    for name, status in pairs:
        if (name or "").strip() != target_service_name:
            continue
        status = (status or "").strip()
        if not status:
            return Indeterminate()
        return Found(status)
    return NotListed(target_service_name)


async def _launch_browser(p, config: ResolverConfig):
    launch_kwargs = {"headless": True, "args": list(config.browser_args)}
    if config.executable_path:
        launch_kwargs["executable_path"] = config.executable_path
    try:
        return await p.chromium.launch(**launch_kwargs)
    except Exception as e:
        raise RenderEngineUnavailable(str(e)) from e


async def _scrape_pairs(browser, query: StatusQuery, config: ResolverConfig):
    context = await browser.new_context(user_agent=config.user_agent)
    page = await context.new_page()
    page.set_default_timeout(config.render_timeout_ms)

    print(f"[Status] Navigating to {query.source_url}")
    await page.goto(query.source_url, wait_until=config.wait_until, timeout=config.render_timeout_ms)

    return await extract_pairs(page, config.selectors)


async def extract_pairs(page, selectors) -> list:
    """Run the extraction script in a loaded page.

    A bad configured selector makes ``querySelectorAll`` throw inside the page;
    that is surfaced as ``ExtractionFailed`` rather than a network problem.
    """
    args = [[s.name_selector, s.status_selector] for s in selectors]
    try:
        pairs = await page.evaluate(EXTRACT_PAIRS_JS, args)
    except PlaywrightTimeoutError:
        raise
    except PlaywrightError as e:
        raise ExtractionFailed(str(e)) from e
    print(f"[Status] Page evaluated, {len(pairs)} service row(s) found.")
    return pairs


async def resolve(query: StatusQuery, config: ResolverConfig, *, playwright_factory=async_playwright) -> StatusResult:
    """Render the status page in a throwaway headless browser and report on one service.

    Never raises: every outcome, including launch and navigation errors, comes
    back as one of the ``StatusResult`` variants. The browser and the
    Playwright driver are torn down before returning on every path.
    """
    print(f"[Status] Resolving {query.target_service_name!r} (timeout {config.render_timeout_ms} ms)")
    try:
        async with playwright_factory() as p:
            browser = await _launch_browser(p, config)
            try:
                pairs = await _scrape_pairs(browser, query, config)
            finally:
                print("[Status] Closing browser...")
                try:
                    await browser.close()
                except Exception as close_exc:
                    # Keep whatever the scrape raised; driver shutdown still kills the browser
                    print(f"[Status] Close failed: {close_exc}")
    except RenderEngineUnavailable as e:
        print(f"[Status] Browser launch failed: {e}")
        return Failure(FailureKind.RENDER_ENGINE_UNAVAILABLE, str(e))
    except ExtractionFailed as e:
        print(f"[Status] Extraction script failed (check the configured selectors): {e}")
        return Failure(FailureKind.UNKNOWN, f"extraction failed: {e}")
    except PlaywrightTimeoutError as e:
        print(f"[Status] Timed out after {config.render_timeout_ms} ms: {e}")
        return Failure(FailureKind.TIMEOUT, str(e))
    except PlaywrightError as e:
        print(f"[Status] Navigation failed: {e}")
        return Failure(FailureKind.NETWORK_ERROR, str(e))
    except Exception as e:
        print(f"[Status] Unexpected error: {type(e).__name__}: {e}")
        return Failure(FailureKind.UNKNOWN, f"{type(e).__name__}: {e}")

    result = match_status(pairs, query.target_service_name)
    print(f"[Status] Result: {result}")
    return result
