"""
qBittorrent Web API client with transparent re-authentication.

Provides the QBittorrentClient class, which owns one cookie session against one
remote qBittorrent instance. Every remote operation goes through the
with_session_retry decorator:

- If no session exists yet, log in first.
- If the remote answers 401/403, drop the session, log in once and replay the
  call once. A second rejection is raised as AuthError.

Network errors and other HTTP errors are raised unchanged (requests exceptions).
No other retries happen here.

After each login the client asks the remote for its application and Web API
versions, which select between request shapes that changed across releases
(see versions.py).
"""

import functools
import threading
from typing import Any, Dict, Iterable, List, Optional, Tuple, Union

import requests

from .config import Config
from .errors import ActionFailure, AuthError, SessionExpired
from .logger import logger
from .versions import (
    CONTENT_LAYOUT, CURRENT, START_STOP_ACTIONS, TAGS_ON_ADD,
    choose_request_shape, is_version_at_least,
)


REQUEST_TIMEOUT = Config.REQUEST_TIMEOUT

Hashes = Union[str, Iterable[str]]


def join_hashes(hashes: Hashes) -> str:
    """Join content hashes with "|" as the Web API expects. Strings pass through."""
    if isinstance(hashes, str):
        return hashes
    return "|".join(hashes)


def with_session_retry(func):
    """
    Run a remote operation under the session retry policy.

    Logs in when unauthenticated. On SessionExpired, logs in again and replays
    the operation exactly once; a second SessionExpired becomes AuthError.
    """
    @functools.wraps(func)
    def wrapper(self, *args, **kwargs):
        if not self.is_authenticated:
            self.login()

        try:
            return func(self, *args, **kwargs)
        except SessionExpired:
            logger.info(f"Session for {self.base_url} expired during {func.__name__}, logging in again")
            self.sid = None
            self.login()

        try:
            return func(self, *args, **kwargs)
        except SessionExpired as e:
            raise AuthError(f"{func.__name__} on {self.base_url} denied after re-login: {e}") from e

    return wrapper


def build_add_form(
    version: Optional[str],
    urls: Optional[str] = None,
    savepath: Optional[str] = None,
    category: Optional[str] = None,
    tags: Optional[str] = None,
    paused: bool = False,
    content_layout: Optional[str] = None,
    ratio_limit: Optional[float] = None,
    seeding_time_limit: Optional[int] = None,
    up_limit: Optional[int] = None,
    dl_limit: Optional[int] = None,
) -> Dict[str, str]:
    """
    Build the form fields for /torrents/add for a remote reporting `version`.

    - tags are only sent from 4.2.0 on
    - contentLayout replaces root_folder from 4.3.2 on
    - stopped replaces paused from 5.0.0 on
    """
    form = {}
    if urls:
        form["urls"] = urls
    if savepath:
        form["savepath"] = savepath
    if category:
        form["category"] = category
    if tags and is_version_at_least(version, TAGS_ON_ADD):
        form["tags"] = tags

    if paused:
        if choose_request_shape(version, START_STOP_ACTIONS) == CURRENT:
            form["stopped"] = "true"
        else:
            form["paused"] = "true"

    if content_layout:
        if choose_request_shape(version, CONTENT_LAYOUT) == CURRENT:
            form["contentLayout"] = content_layout
        elif content_layout == "Subfolder":
            form["root_folder"] = "true"
        elif content_layout == "NoSubfolder":
            form["root_folder"] = "false"

    if ratio_limit:
        form["ratioLimit"] = str(ratio_limit)
    if seeding_time_limit:
        form["seedingTimeLimit"] = str(seeding_time_limit)
    if up_limit:
        form["upLimit"] = str(up_limit)
    if dl_limit:
        form["dlLimit"] = str(dl_limit)

    return form


class QBittorrentClient:
    def __init__(
        self,
        host: str,
        port: int,
        username: str,
        password: str,
        use_ssl: bool = False,
        timeout: float = REQUEST_TIMEOUT,
    ):
        protocol = "https" if use_ssl else "http"
        self.base_url = f"{protocol}://{host}:{port}"
        self.username = username
        self.password = password
        self.timeout = timeout
        self.session = requests.Session()
        self.sid: Optional[str] = None
        self.app_version: Optional[str] = None
        self.api_version: Optional[str] = None
        self._login_lock = threading.Lock()

    @property
    def is_authenticated(self) -> bool:
        return self.sid is not None

    def _url(self, path: str) -> str:
        return f"{self.base_url}/api/v2/{path.lstrip('/')}"

    def _headers(self) -> Dict[str, str]:
        # qBittorrent's CSRF protection compares these with its own address
        return {"Referer": self.base_url, "Origin": self.base_url}

    def _request(self, method: str, path: str, **kwargs) -> requests.Response:
        response = self.session.request(
            method,
            self._url(path),
            headers=self._headers(),
            timeout=self.timeout,
            **kwargs
        )
        if response.status_code in (401, 403):
            raise SessionExpired(f"{method} {path} rejected with HTTP {response.status_code}")
        response.raise_for_status()
        return response

    def _expect_ok(self, response: requests.Response, action: str) -> None:
        if response.text.strip() == "Fails.":
            raise ActionFailure(f"qBittorrent at {self.base_url} refused {action}")

    # -------------------------------------------------------------------------
    # Session
    # -------------------------------------------------------------------------

    def login(self) -> None:
        """
        Exchange username/password for a session cookie.

        Raises:
            AuthError: If the credentials are rejected, the client IP is banned,
                or no session cookie comes back.
        """
        with self._login_lock:
            logger.info(f"Logging in to {self.base_url}")
            self.sid = None
            self.session.cookies.clear()

            response = self.session.request(
                "POST",
                self._url("auth/login"),
                data={"username": self.username, "password": self.password},
                headers=self._headers(),
                timeout=self.timeout,
            )
            if response.status_code == 403:
                raise AuthError(f"Login to {self.base_url} refused: too many failed attempts")
            response.raise_for_status()
            if response.text.strip() == "Fails.":
                raise AuthError(f"Login to {self.base_url} failed: invalid username or password")

            cookies = response.cookies
            if not cookies:
                raise AuthError(f"Login to {self.base_url} failed: no session cookie received")
            self.sid = next(iter(cookies.values()))

        self.fetch_versions()

    def fetch_versions(self) -> None:
        """Ask the remote for its app and Web API versions, leaving them unknown on failure."""
        try:
            self.app_version = self._request("GET", "app/version").text.strip()
            self.api_version = self._request("GET", "app/webapiVersion").text.strip()
            logger.info(f"Connected to qBittorrent {self.app_version} (API {self.api_version}) at {self.base_url}")
        except (requests.RequestException, SessionExpired) as e:
            logger.warning(f"Failed to fetch versions from {self.base_url}: {e}")

    def supports(self, target_version: str) -> bool:
        return is_version_at_least(self.app_version, target_version)

    def close(self) -> None:
        self.session.close()

    # -------------------------------------------------------------------------
    # Torrent listing and transfer info
    # -------------------------------------------------------------------------

    @with_session_retry
    def list_torrents(self) -> List[Dict[str, Any]]:
        """Return the complete live torrent list of the instance."""
        return self._request("GET", "torrents/info").json()

    @with_session_retry
    def get_transfer_info(self) -> Dict[str, Any]:
        """Return global transfer info, including dl_rate_limit and up_rate_limit."""
        return self._request("GET", "transfer/info").json()

    # -------------------------------------------------------------------------
    # Actions
    # -------------------------------------------------------------------------

    @with_session_retry
    def perform_action(self, action: str, hashes: Hashes, extra_params: Optional[Dict[str, Any]] = None) -> bool:
        """
        POST a bulk action to /torrents/{action}.

        Args:
            action: Web API action name (start, stop, reannounce, recheck,
                setCategory, addTags, ...)
            hashes: Content hashes, pipe-joined string or iterable
            extra_params: Additional form fields for the action

        Returns:
            True once the remote accepted the action
        """
        data = {"hashes": join_hashes(hashes)}
        if extra_params:
            data.update(extra_params)

        logger.info(f"Performing {action} on {data['hashes']} at {self.base_url}")
        try:
            self._request("POST", f"torrents/{action}", data=data)
        except requests.HTTPError as e:
            logger.error(f"Action {action} failed at {self.base_url}: {e}")
            raise
        return True

    def start(self, hashes: Hashes) -> bool:
        # The action name depends on the version learned at login
        if not self.is_authenticated:
            self.login()
        action = "start" if self.supports(START_STOP_ACTIONS) else "resume"
        return self.perform_action(action, hashes)

    def stop(self, hashes: Hashes) -> bool:
        if not self.is_authenticated:
            self.login()
        action = "stop" if self.supports(START_STOP_ACTIONS) else "pause"
        return self.perform_action(action, hashes)

    @with_session_retry
    def delete_torrents(self, hashes: Hashes, delete_files: bool = False) -> bool:
        self._request("POST", "torrents/delete", data={
            "hashes": join_hashes(hashes),
            "deleteFiles": "true" if delete_files else "false",
        })
        return True

    @with_session_retry
    def add_torrent(
        self,
        torrents: Optional[List[Tuple[str, bytes]]] = None,
        **options
    ) -> bool:
        """
        Add torrents by URL/magnet (options["urls"]) and/or .torrent files.

        Args:
            torrents: List of (filename, content) pairs
            **options: Fields accepted by build_add_form

        Returns:
            True if the remote accepted the torrents

        Raises:
            ActionFailure: If qBittorrent answers "Fails."
        """
        form = build_add_form(self.app_version, **options)

        # Always multipart, with or without files
        parts = [(key, (None, value)) for key, value in form.items()]
        for filename, content in torrents or []:
            parts.append(("torrents", (filename, content, "application/x-bittorrent")))

        response = self._request("POST", "torrents/add", files=parts)
        self._expect_ok(response, "add torrent")
        return True

    @with_session_retry
    def export_torrent(self, info_hash: str) -> bytes:
        return self._request("GET", "torrents/export", params={"hash": info_hash}).content

    # -------------------------------------------------------------------------
    # Torrent details
    # -------------------------------------------------------------------------

    @with_session_retry
    def get_torrent_properties(self, info_hash: str) -> Dict[str, Any]:
        return self._request("GET", "torrents/properties", params={"hash": info_hash}).json()

    @with_session_retry
    def get_torrent_trackers(self, info_hash: str) -> List[Dict[str, Any]]:
        return self._request("GET", "torrents/trackers", params={"hash": info_hash}).json()

    @with_session_retry
    def get_torrent_peers(self, info_hash: str) -> Dict[str, Any]:
        # rid=0 asks the sync endpoint for a full snapshot
        data = self._request("GET", "sync/torrentPeers", params={"hash": info_hash, "rid": 0}).json()
        return data.get("peers") or {}

    @with_session_retry
    def get_torrent_files(self, info_hash: str) -> List[Dict[str, Any]]:
        return self._request("GET", "torrents/files", params={"hash": info_hash}).json()

    @with_session_retry
    def set_file_priority(self, info_hash: str, file_id: Union[int, Iterable[int]], priority: int) -> bool:
        if isinstance(file_id, int):
            ids = str(file_id)
        else:
            ids = "|".join(str(i) for i in file_id)
        self._request("POST", "torrents/filePrio", data={
            "hash": info_hash,
            "id": ids,
            "priority": priority,
        })
        return True

    # -------------------------------------------------------------------------
    # Categories
    # -------------------------------------------------------------------------

    @with_session_retry
    def get_categories(self) -> Dict[str, Any]:
        return self._request("GET", "torrents/categories").json()

    @with_session_retry
    def create_category(self, category: str, save_path: str = "") -> bool:
        self._request("POST", "torrents/createCategory", data={"category": category, "savePath": save_path})
        return True

    @with_session_retry
    def edit_category(self, category: str, save_path: str = "") -> bool:
        self._request("POST", "torrents/editCategory", data={"category": category, "savePath": save_path})
        return True

    @with_session_retry
    def remove_categories(self, categories: Union[str, Iterable[str]]) -> bool:
        if not isinstance(categories, str):
            categories = "\n".join(categories)
        self._request("POST", "torrents/removeCategories", data={"categories": categories})
        return True

    # -------------------------------------------------------------------------
    # Application
    # -------------------------------------------------------------------------

    @with_session_retry
    def get_log(self, last_known_id: int = -1) -> List[Dict[str, Any]]:
        return self._request("GET", "log/main", params={"last_known_id": last_known_id}).json()

    @with_session_retry
    def get_preferences(self) -> Dict[str, Any]:
        return self._request("GET", "app/preferences").json()
