"""
Destination filters.

A filter decides whether a source track belongs on a destination. The sync
engine only depends on the FilterEvaluator protocol; ScriptFilter is the
scripted implementation, running a small Python script that defines
``filter(track)`` and returns a bool.

Example script:

    def filter(track):
        return track.extension == "flac" and not regex_match("(?i)live", track.title)
"""

import ast
import builtins
import re
from pathlib import Path
from types import SimpleNamespace
from typing import Any, Callable, Dict, NamedTuple, Optional, Protocol

from loguru import logger

from tracksync.core.errors import ScriptError
from tracksync.domain.library.models import Track

FILTER_FUNCTION = "filter"

# Builtins available to filter scripts; no I/O, imports or introspection
SAFE_BUILTINS = (
    "abs",
    "all",
    "any",
    "bool",
    "dict",
    "enumerate",
    "float",
    "int",
    "isinstance",
    "len",
    "list",
    "max",
    "min",
    "range",
    "reversed",
    "round",
    "set",
    "sorted",
    "str",
    "sum",
    "tuple",
    "zip",
    "Exception",
    "ValueError",
    "TypeError",
    "KeyError",
)


class TrackProjection(NamedTuple):
    """The read-only view of a track handed to filters."""

    title: str
    artist: str
    album: str
    number: int
    disc_number: int
    disc_total: int
    file_path: str
    extension: str

    @classmethod
    def from_track(cls, track: Track) -> "TrackProjection":
        return cls(
            title=track.title,
            artist=track.artist,
            album=track.album,
            number=track.number,
            disc_number=track.disc_number,
            disc_total=track.disc_total,
            file_path=track.file_path,
            extension=track.extension,
        )


class FilterEvaluator(Protocol):
    """Decides whether a track is selected for a destination."""

    def evaluate(self, projection: TrackProjection) -> bool:
        """Return True to select the track.

        Raises:
            ScriptError: If the filter fails for this track
        """
        ...


class AcceptAll:
    """Filter used when a destination has no script: selects everything."""

    name = "accept-all"

    def evaluate(self, projection: TrackProjection) -> bool:
        return True

    def __repr__(self) -> str:
        return "AcceptAll()"


def _compile(source: str, name: str) -> Any:
    try:
        tree = ast.parse(source, filename=f"<filter {name}>")
        code = compile(tree, f"<filter {name}>", "exec")
    except (SyntaxError, ValueError) as e:
        raise ScriptError(f"Filter '{name}' does not compile: {e}") from e

    defines_filter = any(
        isinstance(node, ast.FunctionDef) and node.name == FILTER_FUNCTION
        for node in tree.body
    )
    if not defines_filter:
        raise ScriptError(f"Filter '{name}' must define a function '{FILTER_FUNCTION}(track)'")
    return code


def check_filter(source: str, name: str = "filter") -> None:
    """Check that a script compiles and defines filter(track), without running it.

    Raises:
        ScriptError: If the script is invalid
    """
    _compile(source, name)


class ScriptFilter:
    """Filter backed by a Python script defining ``filter(track)``.

    The script is compiled and its top level executed once, with a restricted
    set of builtins plus ``regex_match(pattern, text)``. Compiled patterns are
    cached per instance.
    """

    def __init__(self, source: str, name: str = "filter"):
        self.name = name
        self.source = source
        self._patterns: Dict[str, re.Pattern] = {}

        code = _compile(source, name)
        namespace: Dict[str, Any] = {
            "__builtins__": {key: getattr(builtins, key) for key in SAFE_BUILTINS},
            "__name__": f"tracksync_filter_{name}",
            "regex_match": self.regex_match,
        }
        try:
            exec(code, namespace)
        except Exception as e:
            raise ScriptError(f"Filter '{name}' failed to load: {type(e).__name__}: {e}") from e

        func = namespace.get(FILTER_FUNCTION)
        if not callable(func):
            raise ScriptError(f"Filter '{name}': '{FILTER_FUNCTION}' is not a function")
        self._func: Callable[[SimpleNamespace], Any] = func

    def regex_match(self, pattern: str, text: str) -> bool:
        """True if pattern matches anywhere in text."""
        compiled = self._patterns.get(pattern)
        if compiled is None:
            try:
                compiled = re.compile(pattern)
            except re.error as e:
                raise ScriptError(f"Invalid regex {pattern!r}: {e}") from e
            self._patterns[pattern] = compiled
        return compiled.search(str(text)) is not None

    def evaluate(self, projection: TrackProjection) -> bool:
        # Fresh copy per call: whatever the script does to it stays local
        track = SimpleNamespace(**projection._asdict())
        try:
            result = self._func(track)
        except ScriptError as e:
            raise ScriptError(str(e), path=projection.file_path) from e
        except Exception as e:
            raise ScriptError(
                f"Filter '{self.name}' raised {type(e).__name__}: {e}",
                path=projection.file_path,
            ) from e

        if not isinstance(result, bool):
            raise ScriptError(
                f"Filter '{self.name}' returned {type(result).__name__}, expected bool",
                path=projection.file_path,
            )
        return result

    def __repr__(self) -> str:
        return f"ScriptFilter({self.name!r})"


def load_filter(
    source: Optional[str] = None,
    path: Optional[str | Path] = None,
    name: str = "filter",
) -> FilterEvaluator:
    """Build the evaluator for a destination.

    An inline script wins over a script file; with neither (or a file that
    does not exist) every track is accepted.

    Raises:
        ScriptError: If the script cannot be read or compiled
    """
    if source is not None:
        return ScriptFilter(source, name)

    if path is not None:
        script_path = Path(path).expanduser()
        if script_path.is_file():
            try:
                text = script_path.read_text(encoding="utf-8")
            except (OSError, UnicodeDecodeError) as e:
                raise ScriptError(f"Cannot read filter {script_path}: {e}", path=str(script_path)) from e
            logger.debug(f"Loaded filter '{name}' from {script_path}")
            return ScriptFilter(text, name)
        logger.debug(f"No filter script at {script_path}, accepting every track")

    return AcceptAll()
