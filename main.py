#!/usr/bin/env python3
"""
Control D Sync
----------------------
Keeps your Control D folders in sync with a set of remote block-lists,
for one or more profiles at once.

For every profile it:
1. Fetches the folder definitions (name, action and rules) from their URLs.
2. Deletes any existing folders with those names (so we start fresh).
3. Snapshots every rule that is still left in the profile.
4. Re-creates the folders and pushes their rules in batches, skipping
   anything the profile already has.

Up to three profiles are synced in parallel. The exit code is 0 only when
every profile synced cleanly.
"""

import argparse
import concurrent.futures
import logging
import os
import re
import sys
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, NamedTuple, Optional, Sequence, Set, Tuple

import httpx
from dotenv import load_dotenv

# --------------------------------------------------------------------------- #
# 0. Bootstrap – load secrets and configure logging
# --------------------------------------------------------------------------- #
load_dotenv()

# Logging goes to stderr and the summary table to stdout; only colorize when
# both are terminals and the user has not opted out.
USE_COLORS = sys.stderr.isatty() and sys.stdout.isatty() and not os.getenv("NO_COLOR")


class Colors:
    if USE_COLORS:
        HEADER = '\033[95m'
        BLUE = '\033[94m'
        CYAN = '\033[96m'
        GREEN = '\033[92m'
        WARNING = '\033[93m'
        FAIL = '\033[91m'
        ENDC = '\033[0m'
        BOLD = '\033[1m'
    else:
        HEADER = ''
        BLUE = ''
        CYAN = ''
        GREEN = ''
        WARNING = ''
        FAIL = ''
        ENDC = ''
        BOLD = ''


class ColoredFormatter(logging.Formatter):
    """Custom formatter to add colors to log levels."""

    LEVEL_COLORS = {
        logging.DEBUG: Colors.BLUE,
        logging.INFO: Colors.CYAN,
        logging.WARNING: Colors.WARNING,
        logging.ERROR: Colors.FAIL,
        logging.CRITICAL: Colors.FAIL + Colors.BOLD,
    }

    def __init__(self, fmt=None, datefmt=None, style='%', validate=True):
        super().__init__(fmt, datefmt, style, validate)
        self.delegate_formatter = logging.Formatter("%(asctime)s | %(levelname)s | %(message)s", datefmt="%H:%M:%S")

    def format(self, record):
        original_levelname = record.levelname
        color = self.LEVEL_COLORS.get(record.levelno, Colors.ENDC)

        # Pad before wrapping in color codes so the visible width stays 8.
        record.levelname = f"{color}{original_levelname:<8}{Colors.ENDC}"
        try:
            return self.delegate_formatter.format(record)
        finally:
            record.levelname = original_levelname


handler = logging.StreamHandler()
handler.setFormatter(ColoredFormatter())
logging.basicConfig(level=logging.INFO, handlers=[handler])
logging.getLogger("httpx").setLevel(logging.WARNING)
log = logging.getLogger("control-d-sync")

# --------------------------------------------------------------------------- #
# 1. Constants – tweak only here
# --------------------------------------------------------------------------- #
API_BASE = "https://api.controld.com/profiles"

BATCH_SIZE = 500
MAX_RETRIES = 3
RETRY_DELAY = 1  # seconds, doubled after every failed attempt
FOLDER_CREATION_DELAY = 2  # seconds to wait after creating a folder
HTTP_TIMEOUT = 30  # seconds, per attempt
MAX_CONCURRENT_PROFILES = 3
DEFAULT_LISTS_FILE = "lists.txt"

# Default action for definitions that omit one: block, enabled.
DEFAULT_DO = 0
DEFAULT_STATUS = 1


def _clean_env_kv(value: Optional[str], key: str) -> Optional[str]:
    """Allow TOKEN/PROFILE values to be provided as either raw values or KEY=value."""
    if not value:
        return value
    v = value.strip()
    m = re.match(rf"^{re.escape(key)}\s*=\s*(.+)$", v)
    if m:
        return m.group(1).strip()
    return v


# --------------------------------------------------------------------------- #
# 2. Data model and errors
# --------------------------------------------------------------------------- #
class SyncError(Exception):
    """Base class for everything the sync engine raises."""


class FetchError(SyncError):
    """A folder definition could not be downloaded or parsed."""


class RequestError(SyncError):
    """An API call still failed after every retry."""


class CreateError(SyncError):
    """A folder could not be created, or could not be found afterwards."""


class ListError(SyncError):
    """The folders or rules of a profile could not be enumerated."""


@dataclass(frozen=True)
class RuleSetDefinition:
    name: str
    do: int
    status: int
    hostnames: Tuple[str, ...]


@dataclass(frozen=True)
class FolderOutcome:
    name: str
    rules_pushed: int = 0
    duplicates_skipped: int = 0
    success: bool = False


@dataclass(frozen=True)
class ProfileOutcome:
    profile_id: str
    folders: Tuple[FolderOutcome, ...] = ()
    success: bool = False

    @property
    def rules_pushed(self) -> int:
        return sum(f.rules_pushed for f in self.folders)

    @property
    def duplicates_skipped(self) -> int:
        return sum(f.duplicates_skipped for f in self.folders)


class PushResult(NamedTuple):
    pushed: int
    duplicates: int
    success: bool


class ProfileStage(Enum):
    START = "start"
    DEFINITIONS_FETCHED = "definitions fetched"
    FOLDERS_LISTED = "folders listed"
    RECONCILED = "reconciled"
    EXISTING_INDEXED = "existing rules indexed"
    DONE = "done"
    ABORTED = "aborted"


# --------------------------------------------------------------------------- #
# 3. Clients and the retrying request executor
# --------------------------------------------------------------------------- #
def _api_client(token: str) -> httpx.Client:
    """Build an authenticated Control D API client (one per profile)."""
    return httpx.Client(
        headers={
            "Accept": "application/json",
            "Authorization": f"Bearer {token}",
        },
        timeout=HTTP_TIMEOUT,
    )


# Raw definition client (no auth, no headers) – single instance
_gh = httpx.Client(timeout=HTTP_TIMEOUT)


def _summarize_response(response: httpx.Response, limit: int = 200) -> str:
    """Drain a failed response and squeeze it into a one-line error summary."""
    try:
        response.read()
        body = response.text.strip()
    except (httpx.HTTPError, httpx.StreamError):
        body = ""
    finally:
        response.close()
    if len(body) > limit:
        body = body[:limit] + "..."
    return f"HTTP {response.status_code}: {body}" if body else f"HTTP {response.status_code}"


def _retry_request(
    request_func: Callable[[], httpx.Response],
    max_retries: int = MAX_RETRIES,
    delay: float = RETRY_DELAY,
) -> httpx.Response:
    """Retry a request function with exponential backoff.

    An attempt fails on a transport-level error or any status >= 400. The
    wait after attempt ``n`` (0-based) is ``delay * 2 ** n``; there is no
    wait after the last attempt. Raises RequestError once every attempt has
    failed.
    """
    last_error = ""
    last_exc: Optional[BaseException] = None

    for attempt in range(max_retries):
        try:
            response = request_func()
        except httpx.RequestError as e:
            last_exc = e
            last_error = f"{type(e).__name__}: {e}"
        else:
            if response.status_code < 400:
                return response
            last_exc = None
            last_error = _summarize_response(response)

        if attempt == max_retries - 1:
            break

        wait_time = delay * (2 ** attempt)
        log.warning(f"Request failed (attempt {attempt + 1}/{max_retries}): {last_error}. Retrying in {wait_time}s...")
        time.sleep(wait_time)

    raise RequestError(f"{last_error} (after {max_retries} attempts)") from last_exc


def _api_get(client: httpx.Client, url: str) -> httpx.Response:
    """GET helper for Control-D API with retries."""
    return _retry_request(lambda: client.get(url))


def _api_delete(client: httpx.Client, url: str) -> httpx.Response:
    """DELETE helper for Control-D API with retries."""
    return _retry_request(lambda: client.delete(url))


def _api_post(client: httpx.Client, url: str, data: Dict) -> httpx.Response:
    """POST helper for Control-D API with retries."""
    return _retry_request(lambda: client.post(url, data=data))


def _api_post_form(client: httpx.Client, url: str, data: Dict) -> httpx.Response:
    """POST helper for form data with retries."""
    return _retry_request(lambda: client.post(url, data=data, headers={"Content-Type": "application/x-www-form-urlencoded"}))


# --------------------------------------------------------------------------- #
# 4. Definition fetcher (cached)
# --------------------------------------------------------------------------- #
class _ReadWriteLock:
    """Many concurrent readers, or a single writer. Queued writers go before new readers."""

    def __init__(self):
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writing = False
        self._waiting_writers = 0

    def acquire_read(self):
        with self._cond:
            while self._writing or self._waiting_writers:
                self._cond.wait()
            self._readers += 1

    def release_read(self):
        with self._cond:
            self._readers -= 1
            if not self._readers:
                self._cond.notify_all()

    def acquire_write(self):
        with self._cond:
            self._waiting_writers += 1
            try:
                while self._writing or self._readers:
                    self._cond.wait()
            finally:
                self._waiting_writers -= 1
            self._writing = True

    def release_write(self):
        with self._cond:
            self._writing = False
            self._cond.notify_all()


# url -> parsed definition, kept for the lifetime of the process
_cache: Dict[str, RuleSetDefinition] = {}
_cache_lock = _ReadWriteLock()
# One lock per URL so concurrent profiles share a single download.
_url_locks: Dict[str, threading.Lock] = {}
_url_locks_guard = threading.Lock()


def _cache_get(url: str) -> Optional[RuleSetDefinition]:
    _cache_lock.acquire_read()
    try:
        return _cache.get(url)
    finally:
        _cache_lock.release_read()


def _cache_put(url: str, definition: RuleSetDefinition) -> None:
    _cache_lock.acquire_write()
    try:
        _cache[url] = definition
    finally:
        _cache_lock.release_write()


def _url_lock(url: str) -> threading.Lock:
    with _url_locks_guard:
        return _url_locks.setdefault(url, threading.Lock())


def validate_folder_url(url: str) -> bool:
    """Validate that the folder URL is safe (HTTPS only)."""
    if not url.startswith("https://"):
        log.warning(f"Skipping unsafe or invalid URL: {url}")
        return False
    return True


def validate_profile_id(profile_id: str) -> bool:
    """Validate that the profile ID contains only safe characters."""
    if not re.match(r"^[a-zA-Z0-9_-]+$", profile_id):
        # Do not log the actual profile ID as it might be a pasted token
        log.error("Invalid profile ID format (contains unsafe characters)")
        return False
    return True


def parse_folder_data(data: Any, url: str) -> RuleSetDefinition:
    """
    Turn a decoded definition document into a RuleSetDefinition.
    Expected structure:
    {
        "group": { "group": "Name", "action": { "do": 0, "status": 1 } },
        "rules": [ { "PK": "example.com" }, ... ]
    }
    """
    if not isinstance(data, dict):
        raise FetchError(f"Invalid data from {url}: root must be a JSON object")

    group = data.get("group")
    if not isinstance(group, dict):
        raise FetchError(f"Invalid data from {url}: missing or malformed 'group'")

    name = group.get("group")
    if not isinstance(name, str) or not name.strip():
        raise FetchError(f"Invalid data from {url}: missing 'group.group' (folder name)")

    action = group.get("action") or {}
    if not isinstance(action, dict):
        raise FetchError(f"Invalid data from {url}: 'group.action' must be an object")

    rules = data.get("rules", [])
    if not isinstance(rules, list):
        raise FetchError(f"Invalid data from {url}: 'rules' must be a list")

    hostnames = tuple(
        r["PK"] for r in rules
        if isinstance(r, dict) and isinstance(r.get("PK"), str) and r["PK"]
    )
    try:
        do = int(action.get("do", DEFAULT_DO))
        status = int(action.get("status", DEFAULT_STATUS))
    except (TypeError, ValueError):
        raise FetchError(f"Invalid data from {url}: non-numeric action flags")

    return RuleSetDefinition(name=name.strip(), do=do, status=status, hostnames=hostnames)


def _gh_get(url: str) -> RuleSetDefinition:
    """Download and parse one definition. Single attempt, no retries."""
    try:
        r = _gh.get(url)
    except httpx.RequestError as e:
        raise FetchError(f"Failed to fetch {url}: {e}") from e

    if r.status_code != 200:
        raise FetchError(f"Failed to fetch {url}: HTTP {r.status_code}")
    if not r.content.strip():
        raise FetchError(f"Failed to fetch {url}: empty response")

    try:
        data = r.json()
    except ValueError as e:
        raise FetchError(f"Invalid JSON from {url}: {e}") from e

    return parse_folder_data(data, url)


def fetch_folder_data(url: str) -> RuleSetDefinition:
    """Return the definition published at ``url``, downloading it at most once."""
    cached = _cache_get(url)
    if cached is not None:
        return cached

    if not validate_folder_url(url):
        raise FetchError(f"Refusing to fetch non-HTTPS URL: {url}")

    with _url_lock(url):
        # Another thread may have filled it while we waited.
        cached = _cache_get(url)
        if cached is not None:
            return cached
        definition = _gh_get(url)
        _cache_put(url, definition)
        return definition


def warm_up_cache(urls: Sequence[str]) -> None:
    """Fetch all folder data in parallel to warm up the cache."""
    urls_to_fetch = [
        u for u in dict.fromkeys(urls)
        if _cache_get(u) is None and validate_folder_url(u)
    ]

    if not urls_to_fetch:
        return

    log.info(f"Warming up cache for {len(urls_to_fetch)} URLs...")
    with concurrent.futures.ThreadPoolExecutor() as executor:
        futures = {executor.submit(fetch_folder_data, url): url for url in urls_to_fetch}

        for future in concurrent.futures.as_completed(futures):
            url = futures[future]
            try:
                future.result()
            except FetchError as e:
                # Left uncached; the profile pipeline fetches again and records the failure.
                log.warning(f"Failed to pre-fetch {url}: {e}")


# --------------------------------------------------------------------------- #
# 5. Folder reconciler
# --------------------------------------------------------------------------- #
def _folders_from_response(response: httpx.Response) -> Dict[str, str]:
    """Return folder-name -> folder-id from a ``/groups`` response body."""
    data = response.json()
    folders = data.get("body", {}).get("groups", [])
    result = {}
    for f in folders:
        name = (f.get("group") or "").strip()
        pk = f.get("PK")
        if not name or pk is None or str(pk) == "":
            continue
        result[name] = str(pk)
    return result


def list_existing_folders(client: httpx.Client, profile_id: str) -> Dict[str, str]:
    """Return folder-name -> folder-id mapping."""
    try:
        response = _api_get(client, f"{API_BASE}/{profile_id}/groups")
        return _folders_from_response(response)
    except RequestError as e:
        raise ListError(f"Failed to list folders for profile {profile_id}: {e}") from e
    except (ValueError, AttributeError, TypeError) as e:
        raise ListError(f"Malformed folder list for profile {profile_id}: {e}") from e


def _rules_from_response(response: httpx.Response) -> List[str]:
    rules = response.json().get("body", {}).get("rules", [])
    return [
        r["PK"] for r in rules
        if isinstance(r, dict) and isinstance(r.get("PK"), str) and r["PK"]
    ]


def get_all_existing_rules(client: httpx.Client, profile_id: str) -> Set[str]:
    """Get all existing rules from the root and every folder in the profile."""
    all_rules: Set[str] = set()

    try:
        root_rules = _rules_from_response(_api_get(client, f"{API_BASE}/{profile_id}/rules"))
        all_rules.update(root_rules)
        log.debug(f"[{profile_id}] Found {len(root_rules)} rules in root folder")
    except (RequestError, ValueError, AttributeError, TypeError) as e:
        log.warning(f"[{profile_id}] Failed to get root folder rules: {e}")

    # All folders, including ones we're not managing
    folders = list_existing_folders(client, profile_id)

    for folder_name, folder_id in folders.items():
        try:
            folder_rules = _rules_from_response(_api_get(client, f"{API_BASE}/{profile_id}/rules/{folder_id}"))
            all_rules.update(folder_rules)
            log.debug(f"[{profile_id}] Found {len(folder_rules)} rules in folder '{folder_name}'")
        except (RequestError, ValueError, AttributeError, TypeError) as e:
            log.warning(f"[{profile_id}] Failed to get rules from folder '{folder_name}': {e}")

    log.info(f"[{profile_id}] Total existing rules across all folders: {len(all_rules)}")
    return all_rules


def delete_folder(client: httpx.Client, profile_id: str, name: str, folder_id: str) -> bool:
    """Delete a single folder by its ID. Returns True if successful."""
    try:
        _api_delete(client, f"{API_BASE}/{profile_id}/groups/{folder_id}")
    except RequestError as e:
        log.error(f"[{profile_id}] Failed to delete folder '{name}' (ID {folder_id}): {e}")
        return False
    log.info("[%s] Deleted folder '%s' (ID %s)", profile_id, name, folder_id)
    return True


def create_folder(client: httpx.Client, profile_id: str, name: str, do: int, status: int) -> str:
    """
    Create a new folder and return its ID.
    The create call does not return the ID, so we re-list and look for the
    folder we just added.
    """
    try:
        _api_post(
            client,
            f"{API_BASE}/{profile_id}/groups",
            data={"name": name, "do": str(do), "status": str(status)},
        )
    except RequestError as e:
        raise CreateError(f"Failed to create folder '{name}': {e}") from e

    try:
        folders = list_existing_folders(client, profile_id)
    except ListError as e:
        raise CreateError(f"Failed to list folders after creating '{name}': {e}") from e

    folder_id = folders.get(name.strip())
    if folder_id is None:
        raise CreateError(f"Folder '{name}' was not found after creation")

    log.info("[%s] Created folder '%s' (ID %s)", profile_id, name, folder_id)
    # Give the API a moment before rules are pushed against the new ID.
    time.sleep(FOLDER_CREATION_DELAY)
    return folder_id


# --------------------------------------------------------------------------- #
# 6. Deduplicating batch pusher
# --------------------------------------------------------------------------- #
def push_rules(
    profile_id: str,
    folder_name: str,
    folder_id: str,
    do: int,
    status: int,
    hostnames: Sequence[str],
    existing_rules: Set[str],
    client: httpx.Client,
) -> PushResult:
    """Push hostnames in batches to the given folder, skipping duplicates."""
    if not hostnames:
        log.info("[%s] Folder '%s' - no rules to push", profile_id, folder_name)
        return PushResult(0, 0, True)

    filtered_hostnames = [h for h in hostnames if h not in existing_rules]
    duplicates_count = len(hostnames) - len(filtered_hostnames)

    if duplicates_count > 0:
        log.info(f"[{profile_id}] Folder '{folder_name}': skipping {duplicates_count} duplicate rules")

    if not filtered_hostnames:
        log.info(f"[{profile_id}] Folder '{folder_name}' - no new rules to push after filtering duplicates")
        return PushResult(0, duplicates_count, True)

    successful_batches = 0
    rules_added = 0
    total_batches = len(range(0, len(filtered_hostnames), BATCH_SIZE))

    for i, start in enumerate(range(0, len(filtered_hostnames), BATCH_SIZE), 1):
        batch = filtered_hostnames[start : start + BATCH_SIZE]

        data = {
            "do": str(do),
            "status": str(status),
            "group": str(folder_id),
        }
        for j, hostname in enumerate(batch):
            data[f"hostnames[{j}]"] = hostname

        try:
            _api_post_form(client, f"{API_BASE}/{profile_id}/rules", data=data)
        except RequestError as e:
            log.error(f"[{profile_id}] Failed to push batch {i}/{total_batches} for folder '{folder_name}': {e}")
            continue

        log.info(
            "[%s] Folder '%s' – batch %d: added %d rules",
            profile_id,
            folder_name,
            i,
            len(batch),
        )
        successful_batches += 1
        rules_added += len(batch)
        # Later folders in this run must see these as duplicates.
        existing_rules.update(batch)

    if successful_batches == total_batches:
        log.info("[%s] Folder '%s' – finished (%d new rules added)", profile_id, folder_name, rules_added)
        return PushResult(rules_added, duplicates_count, True)

    log.error(
        f"[{profile_id}] Folder '{folder_name}' – only {successful_batches}/{total_batches} batches succeeded "
        f"({rules_added} rules added)"
    )
    return PushResult(rules_added, duplicates_count, False)


# --------------------------------------------------------------------------- #
# 7. Profile orchestrator
# --------------------------------------------------------------------------- #
def _advance(profile_id: str, stage: ProfileStage) -> ProfileStage:
    log.debug(f"[{profile_id}] -> {stage.value}")
    return stage


def fetch_definitions(profile_id: str, folder_urls: Sequence[str]) -> List[RuleSetDefinition]:
    """Fetch every definition in URL order, skipping the ones that fail."""
    definitions = []
    for url in folder_urls:
        try:
            definitions.append(fetch_folder_data(url))
        except FetchError as e:
            log.error(f"[{profile_id}] Skipping folder definition: {e}")
    return definitions


def _sync_folder(
    client: httpx.Client,
    profile_id: str,
    definition: RuleSetDefinition,
    existing_rules: Set[str],
) -> FolderOutcome:
    """Create one folder and push its rules."""
    try:
        folder_id = create_folder(client, profile_id, definition.name, definition.do, definition.status)
    except CreateError as e:
        log.error(f"[{profile_id}] {e}")
        return FolderOutcome(definition.name)

    result = push_rules(
        profile_id,
        definition.name,
        folder_id,
        definition.do,
        definition.status,
        definition.hostnames,
        existing_rules,
        client,
    )
    return FolderOutcome(definition.name, result.pushed, result.duplicates, result.success)


def sync_profile(profile_id: str, folder_urls: Sequence[str], token: str) -> ProfileOutcome:
    """One-shot sync: delete old, create new, push rules."""
    stage = _advance(profile_id, ProfileStage.START)
    log.info("Starting sync for profile %s", profile_id)

    definitions = fetch_definitions(profile_id, folder_urls)
    if not definitions:
        log.error(f"[{profile_id}] No valid folder data found; aborting profile")
        _advance(profile_id, ProfileStage.ABORTED)
        return ProfileOutcome(profile_id)
    stage = _advance(profile_id, ProfileStage.DEFINITIONS_FETCHED)

    with _api_client(token) as client:
        try:
            existing_folders = list_existing_folders(client, profile_id)
            stage = _advance(profile_id, ProfileStage.FOLDERS_LISTED)

            for definition in definitions:
                folder_id = existing_folders.get(definition.name)
                if folder_id is not None:
                    delete_folder(client, profile_id, definition.name, folder_id)
            stage = _advance(profile_id, ProfileStage.RECONCILED)

            # Only after deletions, otherwise the rules of folders about to be
            # replaced would be skipped as duplicates.
            existing_rules = get_all_existing_rules(client, profile_id)
            stage = _advance(profile_id, ProfileStage.EXISTING_INDEXED)
        except ListError as e:
            log.error(f"[{profile_id}] Aborting profile after '{stage.value}': {e}")
            _advance(profile_id, ProfileStage.ABORTED)
            return ProfileOutcome(profile_id)

        folders = [_sync_folder(client, profile_id, d, existing_rules) for d in definitions]

    _advance(profile_id, ProfileStage.DONE)
    success_count = sum(1 for f in folders if f.success)
    log.info(f"[{profile_id}] Sync complete: {success_count}/{len(definitions)} folders processed successfully")
    return ProfileOutcome(profile_id, tuple(folders), success_count == len(definitions))


def sync_profiles(
    profile_ids: Sequence[str],
    folder_urls: Sequence[str],
    token: str,
    max_concurrent: int = MAX_CONCURRENT_PROFILES,
) -> List[ProfileOutcome]:
    """Sync every profile, at most ``max_concurrent`` at a time.

    Every profile is attempted; a failure in one never stops the others.
    Outcomes come back in the order the profiles were given.
    """
    semaphore = threading.BoundedSemaphore(max_concurrent)
    results_lock = threading.Lock()
    results: Dict[int, ProfileOutcome] = {}
    success_count = 0

    def run(index: int, profile_id: str) -> None:
        nonlocal success_count
        with semaphore:
            try:
                outcome = sync_profile(profile_id, folder_urls, token)
            except Exception as e:
                log.error(f"[{profile_id}] Unexpected error during sync: {e}")
                outcome = ProfileOutcome(profile_id)
        with results_lock:
            results[index] = outcome
            if outcome.success:
                success_count += 1

    log.info(
        f"Starting concurrent sync for {len(profile_ids)} profiles (max {max_concurrent} concurrent)"
    )
    with concurrent.futures.ThreadPoolExecutor(max_workers=max(1, len(profile_ids))) as executor:
        futures = [executor.submit(run, i, p) for i, p in enumerate(profile_ids)]
        concurrent.futures.wait(futures)

    log.info(f"All profiles processed: {success_count}/{len(profile_ids)} successful")
    return [results[i] for i in range(len(profile_ids))]


def log_dry_run_plan(folder_urls: Sequence[str]) -> bool:
    """Log what a sync would do without calling the API. Returns True if every definition was fetched."""
    definitions = fetch_definitions("dry-run", folder_urls)
    for d in definitions:
        log.info("DRY-RUN plan for '%s': action=%s status=%s rules=%d", d.name, d.do, d.status, len(d.hostnames))
    log.info("Dry-run complete: no API calls were made.")
    return len(definitions) == len(folder_urls)


# --------------------------------------------------------------------------- #
# 8. Reporting
# --------------------------------------------------------------------------- #
def print_summary_table(outcomes: Sequence[ProfileOutcome]) -> None:
    """Print a per-profile, per-folder summary to stdout."""
    names = [f.name for o in outcomes for f in o.folders]
    name_width = max([30] + [len(n) for n in names])
    table_width = name_width + 45

    print("\n" + "=" * table_width)
    print(f"{Colors.HEADER}{'SYNC SUMMARY':^{table_width}}{Colors.ENDC}")
    print("=" * table_width)

    for outcome in outcomes:
        color = Colors.GREEN if outcome.success else Colors.FAIL
        label = "✅ Success" if outcome.success else "❌ Failed"
        print(f"{Colors.BOLD}Profile {outcome.profile_id}{Colors.ENDC}  {color}{label}{Colors.ENDC}")
        print(
            f"{Colors.BOLD}"
            f"{'Folder':<{name_width}} | {'Rules':>10} | {'Duplicates':>10} | {'Status':<10}"
            f"{Colors.ENDC}"
        )
        print("-" * table_width)
        if not outcome.folders:
            print(f"{'(no folders processed)':<{name_width}} |")
        for folder in outcome.folders:
            status_color = Colors.GREEN if folder.success else Colors.FAIL
            status_text = "✅" if folder.success else "❌"
            print(
                f"{folder.name:<{name_width}} | "
                f"{folder.rules_pushed:>10,} | "
                f"{folder.duplicates_skipped:>10,} | "
                f"{status_color}{status_text:<10}{Colors.ENDC}"
            )
        print("-" * table_width)
        print(
            f"{Colors.BOLD}"
            f"{'TOTAL':<{name_width}} | "
            f"{outcome.rules_pushed:>10,} | "
            f"{outcome.duplicates_skipped:>10,} | "
            f"{Colors.ENDC}"
        )
        print("=" * table_width)
    print()


def render_github_summary(outcomes: Sequence[ProfileOutcome]) -> str:
    """Render the job summary as Markdown."""
    succeeded = sum(1 for o in outcomes if o.success)
    lines = ["## Control D Sync", ""]
    if succeeded == len(outcomes):
        lines.append(f"> ✅ All {len(outcomes)} profile(s) synced successfully")
    else:
        lines.append(f"> ❌ {len(outcomes) - succeeded}/{len(outcomes)} profile(s) failed")
    lines.append("")

    for o in outcomes:
        icon = "✅" if o.success else "❌"
        lines.append(f"### {icon} Profile `{o.profile_id}`")
        lines.append("")
        lines.append("| Folder | Rules Pushed | Duplicates Skipped | Status |")
        lines.append("|--------|--------------|--------------------|--------|")
        for f in o.folders:
            # Pipes would break the table layout.
            name = f.name.replace("|", "\\|")
            lines.append(
                f"| {name} | {f.rules_pushed:,} | {f.duplicates_skipped:,} | {'✅' if f.success else '❌'} |"
            )
        lines.append(f"| **Total** | **{o.rules_pushed:,}** | **{o.duplicates_skipped:,}** | |")
        lines.append("")
    return "\n".join(lines) + "\n"


def write_github_summary(outcomes: Sequence[ProfileOutcome]) -> None:
    """Append the summary to $GITHUB_STEP_SUMMARY when running under Actions."""
    summary_path = os.getenv("GITHUB_STEP_SUMMARY")
    if not summary_path:
        return
    try:
        with open(summary_path, "a", encoding="utf-8") as f:
            f.write(render_github_summary(outcomes))
    except OSError as e:
        log.warning(f"Could not write GitHub summary: {e}")


# --------------------------------------------------------------------------- #
# 9. Entry-point
# --------------------------------------------------------------------------- #
def load_folder_urls(path: str) -> List[str]:
    """Read one URL per line, ignoring blank lines and # comments."""
    with open(path, encoding="utf-8") as f:
        lines = (line.strip() for line in f)
        return [line for line in lines if line and not line.startswith("#")]


def parse_profile_ids(value: Optional[str]) -> List[str]:
    cleaned = _clean_env_kv(value, "PROFILE") or ""
    return [p.strip() for p in cleaned.split(",") if p.strip()]


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Control D folder sync")
    parser.add_argument(
        "--profiles",
        help="Comma-separated list of profile IDs (overrides PROFILE env)",
        default=None,
    )
    parser.add_argument(
        "--folder-url",
        action="append",
        help="Folder JSON URL(s) to sync (can be used multiple times; overrides the lists file)",
        default=None,
    )
    parser.add_argument(
        "--lists",
        help=f"File with one folder JSON URL per line (default: {DEFAULT_LISTS_FILE})",
        default=DEFAULT_LISTS_FILE,
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Plan only: fetch folder JSON and print intended actions; no API calls",
    )
    return parser.parse_args(argv)


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = parse_args(argv)

    if args.folder_url:
        folder_urls = args.folder_url
    else:
        try:
            folder_urls = load_folder_urls(args.lists)
        except OSError as e:
            log.error(f"Failed to load {args.lists}: {e}")
            return 1
    if not folder_urls:
        log.error(f"{args.lists} is empty or has no valid URLs")
        return 1
    log.info(f"Loaded {len(folder_urls)} folder URLs")

    if args.dry_run:
        return 0 if log_dry_run_plan(folder_urls) else 1

    token = _clean_env_kv(os.getenv("TOKEN"), "TOKEN")
    profile_ids = parse_profile_ids(args.profiles or os.getenv("PROFILE", ""))

    if not token or not profile_ids:
        log.error("TOKEN and/or PROFILE missing. Set TOKEN env and provide --profiles or PROFILE env.")
        return 1

    valid_ids = [p for p in profile_ids if validate_profile_id(p)]
    invalid_count = len(profile_ids) - len(valid_ids)

    warm_up_cache(folder_urls)
    outcomes = sync_profiles(valid_ids, folder_urls, token) if valid_ids else []
    # Never echo the raw value, it might be a pasted token.
    outcomes = list(outcomes) + [ProfileOutcome(f"(invalid profile ID #{n})") for n in range(1, invalid_count + 1)]

    print_summary_table(outcomes)
    write_github_summary(outcomes)

    if invalid_count:
        log.error(f"{invalid_count} profile ID(s) were skipped as invalid")
    return 0 if all(o.success for o in outcomes) else 1


if __name__ == "__main__":
    sys.exit(main())
