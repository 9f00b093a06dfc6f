"""Release version resolution for MoodleUpgrader."""

import os
import re
from typing import Callable, Iterator, List, Optional

import requests
from packaging import version

from moodleupgrader.constants import DEFAULT_FEED_LIMIT, RELEASE_FEED_URL, VERSION_FILE
from moodleupgrader.errors import FeedUnavailableError
from moodleupgrader.errors_catalog import actionable_error
from moodleupgrader.models import UNKNOWN_VERSION, Comparison, ReleaseVersion

STRICT_VERSION_PATTERN = re.compile(r"^\d+\.\d+(?:\.\d+)?$")
RELEASE_PREFIX_PATTERN = re.compile(r"^\s*(\d+\.\d+(?:\.\d+)?)")
RELEASE_DECLARATION_PATTERN = re.compile(r"""\$release\s*=\s*(['"])(?P<release>[^'"]*)\1""")


def parse_version(text: Optional[str]) -> ReleaseVersion:
    """Parses a strict `major.minor[.patch]` string, or returns the unknown version."""
    if text is None:
        return UNKNOWN_VERSION

    clean = text.strip()
    if not STRICT_VERSION_PATTERN.match(clean):
        return UNKNOWN_VERSION
    return ReleaseVersion(text=clean, parsed=version.Version(clean))


def parse_release(release: str) -> ReleaseVersion:
    """Parses the numeric prefix of a `$release` string such as `4.3.2+ (Build: 20231222)`."""
    match = RELEASE_PREFIX_PATTERN.match(release or "")
    if not match:
        return UNKNOWN_VERSION
    return parse_version(match.group(1))


def compare(a: ReleaseVersion, b: ReleaseVersion) -> Comparison:
    if a.is_unknown or b.is_unknown:
        return Comparison.INCOMPARABLE
    if a.parsed < b.parsed:
        return Comparison.LESS
    if a.parsed > b.parsed:
        return Comparison.GREATER
    return Comparison.EQUAL


class ReleaseFeed:
    """Lazy, restartable, newest-first view over the strict release tags of a feed."""

    def __init__(self, fetch_tags: Callable[[], List[str]], limit: int = DEFAULT_FEED_LIMIT):
        self._fetch_tags = fetch_tags
        self.limit = max(0, limit)
        self._versions: Optional[List[ReleaseVersion]] = None

    def __iter__(self) -> Iterator[ReleaseVersion]:
        if self._versions is None:
            self._versions = self._collect(self._fetch_tags())
        return iter(self._versions[: self.limit])

    def first(self) -> Optional[ReleaseVersion]:
        return next(iter(self), None)

    @staticmethod
    def _collect(tag_names: List[str]) -> List[ReleaseVersion]:
        unique: List[ReleaseVersion] = []
        for name in tag_names:
            candidate = parse_version(name[1:] if name.startswith("v") else name)
            if candidate.is_unknown:
                continue
            if any(existing.parsed == candidate.parsed for existing in unique):
                continue
            unique.append(candidate)
        return sorted(unique, key=lambda item: item.parsed, reverse=True)


class VersionOracle:
    """Reads the installed version and lists release candidates."""

    def __init__(
        self,
        logger,
        requests_module=requests,
        feed_url: str = RELEASE_FEED_URL,
        timeout: float = 30.0,
    ):
        self.logger = logger
        self.requests = requests_module
        self.feed_url = feed_url
        self.timeout = timeout

    def current_version(self, install_root: str) -> ReleaseVersion:
        version_file = os.path.join(install_root, VERSION_FILE)
        try:
            with open(version_file, "r", encoding="utf-8", errors="replace") as file_obj:
                content = file_obj.read()
        except OSError as exc:
            self.logger.debug("Could not read %s: %s", version_file, exc)
            return UNKNOWN_VERSION

        match = RELEASE_DECLARATION_PATTERN.search(content)
        if not match:
            self.logger.debug("No $release declaration found in %s", version_file)
            return UNKNOWN_VERSION
        return parse_release(match.group("release"))

    def candidate_versions(self, limit: int = DEFAULT_FEED_LIMIT) -> ReleaseFeed:
        return ReleaseFeed(self._fetch_tag_names, limit=limit)

    def compare(self, a: ReleaseVersion, b: ReleaseVersion) -> Comparison:
        return compare(a, b)

    def _fetch_tag_names(self) -> List[str]:
        self.logger.info("Loading available Moodle versions from %s", self.feed_url)
        try:
            response = self.requests.get(
                self.feed_url,
                params={"per_page": 100},
                headers={"Accept": "application/vnd.github+json"},
                timeout=self.timeout,
            )
            response.raise_for_status()
            payload = response.json()
        except self.requests.RequestException as exc:
            raise FeedUnavailableError(
                actionable_error("feed_unavailable", reason=str(exc), feed_url=self.feed_url)
            ) from exc
        except ValueError as exc:
            raise FeedUnavailableError(
                actionable_error(
                    "feed_unavailable",
                    reason=f"invalid JSON response ({exc})",
                    feed_url=self.feed_url,
                )
            ) from exc

        if not isinstance(payload, list):
            raise FeedUnavailableError(
                actionable_error(
                    "feed_unavailable",
                    reason="unexpected response format",
                    feed_url=self.feed_url,
                )
            )

        return [
            str(entry["name"])
            for entry in payload
            if isinstance(entry, dict) and isinstance(entry.get("name"), str)
        ]
