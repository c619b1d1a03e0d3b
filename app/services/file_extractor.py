"""Progressive extraction of source files from streamed LLM output.

Files are fenced code blocks whose first line is a file-path comment::

    ```tsx
    // src/frontend/src/App.tsx
    export default function App() { ... }
    ```

The scanner is line based and only looks backwards, so re-running it on a
prefix-extended text never removes a file it already reported as complete.
"""

import logging
import re
import textwrap
from dataclasses import dataclass
from dataclasses import field

logger = logging.getLogger(__name__)

__all__ = [
    "ExtractionResult",
    "ProgressiveFileExtractor",
    "is_backend_file",
    "is_frontend_file",
]

FENCE = "```"
MIN_COMPLETE_CHARS = 10

BACKEND_SOURCE_ROOT = "src/backend/src/"
FRONTEND_SOURCE_ROOT = "src/frontend/src/"

_PATH_COMMENT_PATTERNS = (
    re.compile(r"^//\s*(.+?)\s*$"),
    re.compile(r"^/\*\s*(.+?)\s*\*/$"),
    re.compile(r"^<!--\s*(.+?)\s*-->$"),
    re.compile(r"^#\s*(.+?)\s*$"),
)
_PATH_CHARS = re.compile(r"[\w.\-/@\[\]()+]+")

_LANGUAGE_EXTENSIONS = {
    "motoko": ".mo",
    "mo": ".mo",
    "css": ".css",
    "json": ".json",
    "html": ".html",
}
DEFAULT_EXTENSION = ".tsx"

_EXCLUDED_NAMES = {"package-lock.json", "yarn.lock"}
_EXCLUDED_DIRS = {"dist", "build", "node_modules", ".github", ".vscode"}


@dataclass
class ExtractionResult:
    complete: dict[str, str] = field(default_factory=dict)
    in_progress: dict[str, str] = field(default_factory=dict)

    @property
    def names(self) -> list[str]:
        return list(self.complete) + list(self.in_progress)


def _parse_path_comment(line: str) -> str | None:
    stripped = line.strip()
    for pattern in _PATH_COMMENT_PATTERNS:
        match = pattern.match(stripped)
        if not match:
            continue
        candidate = match.group(1)
        # A path has no spaces and at least a dot or a separator
        if _PATH_CHARS.fullmatch(candidate) and ("." in candidate or "/" in candidate):
            return candidate
    return None


def _normalize_path(raw: str, language: str) -> str:
    path = raw.replace("\\", "/")
    while path.startswith("./"):
        path = path[2:]
    path = path.lstrip("/")

    basename = path.rsplit("/", 1)[-1]
    if "." not in basename:
        path += _LANGUAGE_EXTENSIONS.get(language, DEFAULT_EXTENSION)

    if "/" not in path:
        root = BACKEND_SOURCE_ROOT if path.endswith(".mo") else FRONTEND_SOURCE_ROOT
        path = root + path
    return path


def _is_excluded(path: str) -> bool:
    lowered = path.lower()
    parts = lowered.split("/")
    basename = parts[-1]
    if basename in _EXCLUDED_NAMES:
        return True
    if basename.startswith(".env") or basename.startswith("vite.config."):
        return True
    if basename.endswith(".log"):
        return True
    return any(part in _EXCLUDED_DIRS for part in parts[:-1])


def is_backend_file(path: str) -> bool:
    lowered = path.lower()
    basename = lowered.rsplit("/", 1)[-1]
    return (
        lowered.endswith(".mo")
        or lowered.endswith(".did")
        or "/backend/" in lowered
        or "/canister/" in lowered
        or basename in {"main.mo", "mops.toml", "vessel.toml", "dfx.json"}
    )


def is_frontend_file(path: str) -> bool:
    lowered = path.lower()
    basename = lowered.rsplit("/", 1)[-1]
    if lowered.endswith(".d.ts"):
        return False
    if lowered.endswith((".tsx", ".jsx", ".ts", ".js", ".css", ".scss", ".html")):
        return True
    if any(segment in lowered for segment in ("/frontend/", "/components/", "/pages/", "/styles/")):
        return True
    return basename in {"package.json", "index.html"} or basename.startswith(("vite.config", "tailwind.config"))


class ProgressiveFileExtractor:
    """Detects complete and in-progress files in a phase's accumulated text."""

    def detect(self, text: str) -> ExtractionResult:
        result = ExtractionResult()
        seen: set[str] = set()

        in_block = False
        language = ""
        body: list[str] = []

        for line in text.split("\n"):
            stripped = line.lstrip()
            if not in_block:
                if stripped.startswith(FENCE):
                    in_block = True
                    tokens = stripped[len(FENCE) :].strip().split()
                    language = tokens[0].lower() if tokens else ""
                    body = []
                continue
            if stripped.startswith(FENCE):
                self._collect(body, language, True, result, seen)
                in_block = False
                continue
            body.append(line)

        if in_block:
            self._collect(body, language, False, result, seen)
        return result

    def _collect(
        self,
        body: list[str],
        language: str,
        closed: bool,
        result: ExtractionResult,
        seen: set[str],
    ) -> None:
        lines = list(body)
        while lines and not lines[0].strip():
            lines.pop(0)
        if not lines:
            return
        raw_path = _parse_path_comment(lines[0])
        if raw_path is None:
            return
        # The path comment may still be streaming in
        if not closed and len(lines) == 1:
            return

        path = _normalize_path(raw_path, language)
        if _is_excluded(path):
            logger.debug("Skipping excluded file %s", path)
            return
        key = path.lower()
        if key in seen:
            return

        content = textwrap.dedent("\n".join(lines[1:])).strip("\n")
        if closed:
            if len(content.strip()) <= MIN_COMPLETE_CHARS:
                return
            seen.add(key)
            result.complete[path] = content
        elif content.strip():
            seen.add(key)
            result.in_progress[path] = content
