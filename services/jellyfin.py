"""
Jellyfin client that reads persisted settings and performs authenticated
requests to the Jellyfin REST API.

Every public call handles its own failures: the error is logged and an empty
result is returned, so callers never need to guard against exceptions from
the network.
"""

from __future__ import annotations

import ipaddress
import json
import logging
import re
import socket
import time
from typing import Any, Callable, Dict, Iterable, List, Optional, Union
from urllib.error import HTTPError, URLError
from urllib.parse import urlencode, urlparse
from urllib.request import Request, urlopen

from services.settings_store import SettingsService

logger = logging.getLogger(__name__)

AUTH_HEADER = "X-MediaBrowser-Token"
ITEM_FIELDS = "MediaSources,DateCreated"
DEFAULT_INCREMENT = 200
PAGE_DELAY_SECONDS = 0.01
EXCLUDED_COLLECTION_TYPES = ("boxsets", "playlists")

HOSTNAME_RE = re.compile(
    r"^(?=.{1,255}$)([A-Za-z0-9](?:[A-Za-z0-9\-]{0,61}[A-Za-z0-9])?)"
    r"(?:\.[A-Za-z0-9](?:[A-Za-z0-9\-]{0,61}[A-Za-z0-9])?)*$"
)
WEB_HOME_SUFFIX_RE = re.compile(r"/web/index\.html#!/home\.html$")
SCHEME_RE = re.compile(r"^https?://", re.IGNORECASE)

UNREACHABLE_MESSAGE = (
    "Unable to connect. Please check the URL and your network connection."
)


def http_error_message(status: int, path: str = "") -> str:
    """
    Classify an HTTP error status returned by Jellyfin.

    :param status: HTTP status code
    :param path: Request path, included for 404/503
    :returns str: Human readable message
    """
    if status == 400:
        return "400 Bad Request"
    if status == 401:
        return "401 Unauthorized"
    if status == 403:
        return "403 Access Forbidden"
    if status == 404:
        return f"404 URL Not Found : {path}"
    if status == 503:
        return f"503 Service Unavailable : {path}"
    return f"Unexpected status code: {status}"


def clean_server_url(url: str) -> str:
    """
    Normalize a server URL as typed by a user (often copied from the
    browser address bar).
    """
    cleaned = WEB_HOME_SUFFIX_RE.sub("", (url or "").strip())
    cleaned = re.sub(r"/$", "", cleaned)
    if not SCHEME_RE.match(cleaned):
        cleaned = f"http://{cleaned}"
    return cleaned


def normalize_base_url(raw: Optional[str]) -> Optional[str]:
    """
    Validate a Jellyfin base URL and return it as scheme://host[:port][/path].

    :param raw: URL with or without scheme
    :returns str | None: Normalized URL, or None if the host is invalid
    """
    raw = (raw or "").strip()
    if not raw:
        return None

    parsed = urlparse(raw if "://" in raw else f"http://{raw}")
    scheme = (parsed.scheme or "").lower()
    if scheme not in ("http", "https"):
        return None

    host = (parsed.hostname or "").strip()
    if not host:
        return None

    valid = False
    try:
        ipaddress.ip_address(host) # Accept valid ipv4/ipv6
        valid = True
    except ValueError:
        if HOSTNAME_RE.match(host):
            valid = True
    if not valid:
        return None

    try:
        port = parsed.port
    except ValueError: # Out-of-range or non-numeric port
        return None

    if ":" in host:
        host = f"[{host}]"
    netloc = f"{host}:{port}" if port else host
    path = parsed.path.rstrip("/")
    return f"{scheme}://{netloc}{path}"


def _encode_params(params: Optional[Dict[str, Any]]) -> str:
    if not params:
        return ""
    clean: Dict[str, str] = {}
    for key, value in params.items():
        if value is None:
            continue
        if isinstance(value, bool):
            clean[key] = "true" if value else "false"
        else:
            clean[key] = str(value)
    return urlencode(clean)


class JellyfinClient:
    def __init__(
        self,
        settings: SettingsService,
        max_retries: int = 1,
        backoff_base: float = 1.0,
        timeout: float = 10.0,
        page_delay: float = PAGE_DELAY_SECONDS,
    ) -> None:
        self._settings = settings
        self.max_retries = max(1, int(max_retries))
        self.backoff_base = backoff_base
        self.timeout = timeout
        self.page_delay = page_delay

    # -------------------------
    # Helpers
    # -------------------------

    def _read_settings(self) -> Dict[str, Optional[str]]:
        """
        Read settings and normalize the server URL.

        :returns dict: base_url (None if invalid) and api_key
        """
        s = self._settings.get()
        return {
            "base_url": normalize_base_url(s.get("jf_host")),
            "api_key": (s.get("jf_api_key") or "").strip() or None,
        }

    @property
    def config_ready(self) -> bool:
        """
        True when the stored settings are usable for requests.
        """
        cfg = self._read_settings()
        return bool(cfg["base_url"] and cfg["api_key"])

    def _build_url(
        self,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        base: Optional[str] = None,
    ) -> Optional[str]:
        """
        Construct a full URL for a given Jellyfin path.

        :param path: API path
        :param params: Query parameters
        :param base: Base URL overriding the stored one
        :returns str | None: Full URL, or None if config is invalid
        """
        if base is None:
            base = self._read_settings()["base_url"]
        if not base:
            return None

        if not path.startswith("/"): # Ensure leading slash for URL path
            path = f"/{path}"

        query = _encode_params(params)
        sep = "&" if "?" in path else "?"
        return f"{base}{path}{sep}{query}" if query else f"{base}{path}"

    def _is_transient_error(self, exc: Exception) -> bool:
        """
        Determine if an error is transient and may be retried.
        """
        if isinstance(exc, HTTPError):
            return exc.code in (408, 429, 500, 502, 503, 504)
        if isinstance(exc, URLError):
            return True
        return False

    def _error_result(
        self, exc: Optional[Exception], method: str, url: str
    ) -> Dict[str, Any]:
        """
        Log a failed request and build its result object.
        """
        if isinstance(exc, HTTPError):
            message = http_error_message(exc.code, urlparse(url).path)
            logger.error("[JELLYFIN-API]: %s", message)
            return {"ok": False, "status": exc.code, "message": message}

        if isinstance(exc, URLError):
            reason = getattr(exc, "reason", "Unknown")
            logger.error(
                "[JELLYFIN-API] %s %s failed: %s", method, url, reason
            )
            return {
                "ok": False,
                "status": 0,
                "message": f"Network error: {reason}",
                "unreachable": isinstance(reason, socket.gaierror),
            }

        logger.error("[JELLYFIN-API] %s %s failed: %s", method, url, exc)
        return {
            "ok": False,
            "status": 0,
            "message": f"Unexpected error: {exc}",
        }

    def _request(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        body: Optional[Dict[str, Any]] = None,
        api_key: Optional[str] = None,
        base: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Perform a request to Jellyfin.

        :param method: HTTP method
        :param path: API path to request
        :param params: Query parameters
        :param body: JSON body for POST requests
        :param api_key: Token overriding the stored one
        :param base: Base URL overriding the stored one
        :returns dict: Result object containing success flag, status code, and payload/error
        """
        if api_key is None:
            api_key = self._read_settings()["api_key"]
        url = self._build_url(path, params, base)
        if not url or not api_key: # Invalid or incomplete config
            return {
                "ok": False,
                "status": 400,
                "message": "Missing or invalid Jellyfin URL or API key.",
            }

        data = json.dumps(body).encode("utf-8") if body is not None else None
        req = Request(url, data=data, method=method)
        req.add_header(AUTH_HEADER, api_key)
        req.add_header("Accept", "application/json")
        if data is not None:
            req.add_header("Content-Type", "application/json")

        last_exception: Optional[Exception] = None
        for attempt in range(self.max_retries):
            try:
                with urlopen(req, timeout=self.timeout) as resp:
                    status = getattr(resp, "status", 200)
                    raw = resp.read()
                    try:
                        parsed = json.loads(raw.decode("utf-8")) if raw else {}
                    except ValueError:
                        parsed = {}

                    return {
                        "ok": 200 <= status < 300,
                        "status": status,
                        "data": parsed,
                    }
            except HTTPError as he:
                last_exception = he
                if not self._is_transient_error(he):
                    break
            except URLError as ue:
                last_exception = ue
            except Exception as exc: # Timeouts, dropped connections
                last_exception = exc
                break

            if attempt < self.max_retries - 1: # Exp backoff before retry
                time.sleep(self.backoff_base * (2 ** attempt))

        return self._error_result(last_exception, method, url)

    def _get(
        self, path: str, params: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        return self._request("GET", path, params=params)

    def _post(self, path: str, body: Dict[str, Any]) -> Dict[str, Any]:
        return self._request("POST", path, body=body)

    def _items_of(self, resp: Dict[str, Any]) -> List[Dict[str, Any]]:
        """
        Extract the Items array of a successful response.
        """
        if not resp.get("ok"):
            return []
        data = resp.get("data")
        if isinstance(data, dict):
            items = data.get("Items")
            return items if isinstance(items, list) else []
        if isinstance(data, list):
            return data
        return []

    @staticmethod
    def _drop_virtual(items: Iterable[Dict[str, Any]]) -> List[Dict[str, Any]]:
        return [it for it in items if it.get("LocationType") != "Virtual"]

    def _paginate(
        self,
        path: str,
        query: Dict[str, Any],
        params: Optional[Dict[str, Any]] = None,
        on_progress: Optional[Callable[[float], None]] = None,
    ) -> List[Dict[str, Any]]:
        """
        Fetch every page of an /Items query.

        The loop ends once startIndex reaches TotalRecordCount, or right after
        the first response that does not report a TotalRecordCount.
        """
        params = params or {}
        start_index = int(params.get("startIndex") or 0)
        increment = int(params.get("increment") or DEFAULT_INCREMENT)
        recursive = params.get("recursive", True)
        total = start_index + increment

        aggregated: List[Dict[str, Any]] = []
        while start_index < total:
            resp = self._get(path, {
                **query,
                "fields": ITEM_FIELDS,
                "startIndex": start_index,
                "recursive": recursive,
                "limit": increment,
                "isMissing": False,
                "excludeLocationTypes": "Virtual",
            })
            if not resp.get("ok"):
                return []

            data = resp.get("data")
            if not isinstance(data, dict):
                data = {}
            reported = data.get("TotalRecordCount")
            total = int(reported or 0)
            start_index += increment

            page = data.get("Items") or []
            aggregated.extend(page)

            if reported is None:
                break
            if on_progress and total:
                on_progress(round(min(start_index / total, 1.0) * 100, 2))
            if start_index < total:
                time.sleep(self.page_delay)

        return aggregated

    def _resolve_user_id(self, user_id: Optional[str]) -> Optional[str]:
        """
        Pick the user for user-scoped endpoints: explicit id, then the
        preferred admin from settings, then the first administrator.
        """
        if user_id:
            return user_id

        get_preferred = getattr(self._settings, "get_preferred_admin", None)
        preferred = get_preferred() if get_preferred else None
        if preferred:
            return preferred

        admins = self.get_admins()
        if admins:
            return admins[0].get("Id")

        logger.warning("[JELLYFIN-API] No administrator account available")
        return None

    # -------------------------
    # Public API
    # -------------------------

    def get_system_info(self) -> Dict[str, Any]:
        """
        Returns Jellyfin system info.
        """
        resp = self._get("/System/Info")
        data = resp.get("data") if resp.get("ok") else None
        return data if isinstance(data, dict) else {}

    def get_users(self) -> List[Dict[str, Any]]:
        """
        Returns list of users.
        """
        if not self.config_ready:
            return []
        resp = self._get("/Users")
        data = resp.get("data") if resp.get("ok") else None
        return data if isinstance(data, list) else []

    def get_admins(self) -> List[Dict[str, Any]]:
        """
        Returns users with the administrator policy.
        """
        return [
            u for u in self.get_users()
            if (u.get("Policy") or {}).get("IsAdministrator")
        ]

    def get_items_by_id(
        self,
        ids: Union[str, Iterable[str]],
        params: Optional[Dict[str, Any]] = None,
    ) -> List[Dict[str, Any]]:
        """
        Returns items by id, following pagination.

        :param ids: One id, a comma separated string, or an iterable of ids
        :param params: Optional startIndex/increment/recursive overrides
        """
        if not self.config_ready:
            return []
        if not isinstance(ids, str):
            ids = ",".join(ids)
        if not ids:
            return []
        return self._paginate("/Items", {"ids": ids}, params)

    def get_items_from_parent_id(
        self,
        parent_id: str,
        item_id: Optional[str] = None,
        params: Optional[Dict[str, Any]] = None,
        on_progress: Optional[Callable[[float], None]] = None,
    ) -> List[Dict[str, Any]]:
        """
        Returns all items below a parent (usually a library).

        :param parent_id: Jellyfin parent/library identifier
        :param item_id: Restrict to a single item below the parent
        :param params: Optional startIndex/increment/recursive overrides
        :param on_progress: Called with the completed percentage after each page
        """
        if not self.config_ready:
            return []
        query: Dict[str, Any] = {"ParentId": parent_id}
        if item_id:
            query["Ids"] = item_id
        return self._paginate("/Items", query, params, on_progress)

    def get_item_info(
        self, item_id: str, user_id: Optional[str] = None
    ) -> List[Dict[str, Any]]:
        """
        Returns the media sources of an item as seen by a user.
        """
        if not self.config_ready:
            return []
        user_id = self._resolve_user_id(user_id)
        if not user_id:
            return []
        resp = self._get(
            f"/Items/{item_id}/playbackinfo", {"userId": user_id}
        )
        data = resp.get("data") if resp.get("ok") else None
        if not isinstance(data, dict):
            return []
        return data.get("MediaSources") or []

    def get_libraries(self) -> List[Dict[str, Any]]:
        """
        Returns media folders, without box sets and playlists.
        """
        if not self.config_ready:
            return []
        items = self._items_of(self._get("/Library/MediaFolders"))
        return [
            lib for lib in items
            if lib.get("CollectionType") not in EXCLUDED_COLLECTION_TYPES
        ]

    def get_seasons(self, series_id: str) -> List[Dict[str, Any]]:
        """
        Returns the non-virtual seasons of a series.
        """
        if not self.config_ready:
            return []
        return self._drop_virtual(
            self._items_of(self._get(f"/Shows/{series_id}/Seasons"))
        )

    def get_episodes(
        self, series_id: str, season_id: str
    ) -> List[Dict[str, Any]]:
        """
        Returns the non-virtual episodes of one season of a series.
        """
        if not self.config_ready:
            return []
        return self._drop_virtual(
            self._items_of(self._get(
                f"/Shows/{series_id}/Episodes", {"seasonId": season_id}
            ))
        )

    def get_recently_added(
        self,
        library_id: Optional[str] = None,
        limit: int = 20,
        user_id: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        """
        Returns the latest items, optionally restricted to one library.
        """
        if not self.config_ready:
            return []
        user_id = self._resolve_user_id(user_id)
        if not user_id:
            return []
        params: Dict[str, Any] = {"Limit": limit, "fields": ITEM_FIELDS}
        if library_id:
            params["ParentId"] = library_id
        resp = self._get(f"/Users/{user_id}/Items/Latest", params)
        data = resp.get("data") if resp.get("ok") else None
        return self._drop_virtual(data) if isinstance(data, list) else []

    def get_sessions(self) -> List[Dict[str, Any]]:
        """
        Returns sessions that are currently playing something other than a
        trailer.
        """
        if not self.config_ready:
            return []
        resp = self._get("/sessions")
        data = resp.get("data") if resp.get("ok") else None
        if not isinstance(data, list):
            return []
        return [
            s for s in data
            if isinstance(s.get("NowPlayingItem"), dict)
            and s["NowPlayingItem"].get("Type") != "Trailer"
        ]

    def get_installed_plugins(self) -> List[Dict[str, Any]]:
        """
        Returns the plugins installed on the server.
        """
        if not self.config_ready:
            return []
        resp = self._get("/plugins")
        data = resp.get("data") if resp.get("ok") else None
        return data if isinstance(data, list) else []

    def stats_submit_custom_query(self, query: str) -> List[Any]:
        """
        Run a SQL query through the Playback Reporting plugin.

        :param query: SQLite query against the plugin's database
        :returns list: Result rows, each a list of column values
        """
        if not self.config_ready:
            return []
        resp = self._post(
            "/user_usage_stats/submit_custom_query",
            {"CustomQueryString": query},
        )
        data = resp.get("data") if resp.get("ok") else None
        if not isinstance(data, dict):
            return []
        return data.get("results") or []

    def validate_settings(self, url: str, api_key: str) -> Dict[str, Any]:
        """
        Check a server URL and API key before they are saved.

        :param url: Server URL as entered by the user
        :param api_key: API key to test
        :returns dict: is_valid, status, error_message, url, cleaned_url
        """
        result: Dict[str, Any] = {
            "is_valid": False,
            "status": 400,
            "error_message": "Invalid URL",
            "url": url,
            "cleaned_url": "",
        }
        cleaned = clean_server_url(url)
        result["cleaned_url"] = cleaned

        base = normalize_base_url(cleaned)
        if not base:
            return result

        resp = self._request(
            "GET",
            "/system/configuration",
            api_key=(api_key or "").strip(),
            base=base,
        )
        if resp.get("ok"):
            result.update(is_valid=True, status=resp["status"], error_message="")
            return result

        status = resp.get("status") or 400
        result["status"] = status
        if resp.get("unreachable"):
            result["error_message"] = UNREACHABLE_MESSAGE
        else:
            result["error_message"] = resp.get("message") or "Unknown error"
        return result


def create_client(settings_service: SettingsService, **kwargs: Any) -> JellyfinClient:
    """
    Factory to create a JellyfinClient from a settings store.

    :param settings_service: Settings provider containing config
    :returns JellyfinClient: Initialized Jellyfin client instance
    """
    return JellyfinClient(settings_service, **kwargs)
