#!/usr/bin/env python3
"""
catall - Concatenate every non-ignored text file in a directory tree.

Walks the current directory honouring nested .gitignore/.ignore files,
optionally narrows the result with a regular expression, and writes each
text file to stdout under a path banner. Binary files are replaced by a
marker line.

Architecture:
    CLI Args → Configuration → Walker thread → Queue → Candidate Filter →
    Sort → Renderer → Classifier (per file) → stdout
"""

from __future__ import annotations

import argparse
import codecs
import logging
import os
import queue
import re
import stat
import subprocess
import sys
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum, auto
from pathlib import Path
from typing import (
    BinaryIO,
    Callable,
    FrozenSet,
    Iterable,
    Iterator,
    List,
    Optional,
    Tuple,
)

import gitignore_parser

try:
    import fcntl
except ImportError:  # Windows
    fcntl = None

# =============================================================================
# VERSION MANAGEMENT
# =============================================================================

__version__ = "1.0.0"

# Release builds stamp the commit here; checkouts fall back to asking git.
__commit__ = "none"


def get_version() -> str:
    """Get version from package metadata or fallback to hardcoded."""
    from importlib.metadata import PackageNotFoundError, version

    try:
        return version("catall")
    except PackageNotFoundError:
        return __version__


def _git(*args: str, cwd: Path) -> Optional[str]:
    """Run a git query, returning its stripped stdout or None on any failure."""
    try:
        result = subprocess.run(
            ["git", *args],
            cwd=str(cwd),
            capture_output=True,
            text=True,
            check=False,
        )
    except OSError:
        return None
    output = result.stdout.strip()
    if result.returncode != 0 or not output:
        return None
    return output


def get_commit() -> str:
    """Stamped commit, else the short HEAD of catall's own checkout, else 'none'.

    An installed copy living somewhere inside an unrelated repository (a
    virtualenv in a user's project, say) must not report that repository's
    commit, so git is only trusted when its top level is this module's
    directory.
    """
    if __commit__ != "none":
        return __commit__

    here = Path(__file__).resolve().parent
    toplevel = _git("rev-parse", "--show-toplevel", cwd=here)
    if toplevel is None or Path(toplevel).resolve() != here:
        return "none"
    return _git("rev-parse", "--short", "HEAD", cwd=here) or "none"


def version_string(prog: str) -> str:
    return f"{prog} version {get_version()} (commit {get_commit()})"


# =============================================================================
# CONSTANTS
# =============================================================================

class Defaults:
    """Default configuration values."""
    SAMPLE_SIZE = 8000          # bytes inspected by the classifier, like file(1)
    CONTROL_RATIO = 0.1
    CHUNK_SIZE = 4096
    QUEUE_SIZE = 100


class ExcludedDirs:
    """Version control metadata directories never descended into."""
    DIRS: FrozenSet[str] = frozenset({".git", ".svn", ".hg"})


class IgnoreFiles:
    """Ignore-rule files. Their rules apply, the files themselves are never output."""
    NAMES: Tuple[str, ...] = (".gitignore", ".ignore")


BINARY_MARKER = b"BINARY OR BAD FORMAT"
INDEX_HEADER = "Files not ignored in this directory:"

# C0 controls other than tab, LF and CR, plus DEL
_CONTROL_BYTES = bytes(b for b in range(0x20) if b not in (0x09, 0x0A, 0x0D)) + b"\x7f"


# =============================================================================
# ENUMS AND DATA MODELS
# =============================================================================

class Classification(Enum):
    """Result of inspecting a file's leading bytes."""
    TEXT = auto()
    BINARY = auto()


@dataclass(frozen=True)
class CatConfig:
    """Immutable run configuration."""
    root_dir: Path
    list_only: bool = False
    filter_re: Optional[re.Pattern] = None
    output_target: Optional[Path] = None

    # Walker options
    include_hidden: bool = True
    excluded_dirs: FrozenSet[str] = ExcludedDirs.DIRS
    ignore_files: Tuple[str, ...] = IgnoreFiles.NAMES

    # Sizes
    queue_size: int = Defaults.QUEUE_SIZE
    sample_size: int = Defaults.SAMPLE_SIZE
    chunk_size: int = Defaults.CHUNK_SIZE


# =============================================================================
# CLASSIFIER
# =============================================================================

def _is_valid_utf8(sample: bytes) -> bool:
    try:
        codecs.decode(sample, "utf-8")
    except UnicodeDecodeError:
        return False
    return True


def classify_sample(sample: bytes) -> Classification:
    """Classify a prefix sample of a file.

    The sample is validated as-is: a multi-byte character cut off by the
    sample limit counts as malformed, the same as any other bad sequence.
    """
    if not _is_valid_utf8(sample):
        return Classification.BINARY

    if not sample:
        return Classification.TEXT

    if b"\x00" in sample:
        return Classification.BINARY

    control = len(sample) - len(sample.translate(None, _CONTROL_BYTES))
    if control / len(sample) > Defaults.CONTROL_RATIO:
        return Classification.BINARY
    return Classification.TEXT


def classify_stream(
    stream: BinaryIO, sample_size: int = Defaults.SAMPLE_SIZE
) -> Classification:
    """Classify from the current position of an open binary stream."""
    return classify_sample(stream.read(sample_size))


def classify(path: Path, sample_size: int = Defaults.SAMPLE_SIZE) -> Classification:
    """Classify the file at ``path``. Raises OSError if it cannot be read."""
    with open(path, "rb") as f:
        return classify_stream(f, sample_size)


# =============================================================================
# WALKER
# =============================================================================

_DONE = object()

ErrorHandler = Callable[[Exception], bool]
IgnoreRule = gitignore_parser.IgnoreRule


def report_walk_error(error: Exception) -> bool:
    """Default walker error handler: log and keep going."""
    logging.warning(f"Walk error: {error}")
    return True


def load_ignore_rules(ignore_file: Path) -> List[IgnoreRule]:
    """Parse one ignore file into rules anchored at its directory.

    Raises OSError if the file cannot be read and ValueError if it is not
    valid UTF-8.
    """
    rules = []
    lines = ignore_file.read_text(encoding="utf-8").splitlines()
    for line_no, line in enumerate(lines, start=1):
        try:
            rule = gitignore_parser.rule_from_pattern(
                line, base_path=ignore_file.parent, source=(str(ignore_file), line_no)
            )
        except IndexError:
            # degenerate patterns such as a lone "!"
            logging.debug(f"Skipping pattern {line!r} at {ignore_file}:{line_no}")
            continue
        if rule:
            rules.append(rule)
    return rules


def is_ignored(path: Path, is_dir: bool, rules: Iterable[IgnoreRule]) -> bool:
    """Apply rules gitignore-style: the last matching rule decides.

    Directory-only rules (``build/``) are skipped for regular files.
    """
    for rule in reversed(list(rules)):
        if rule.directory_only:
            if not is_dir:
                continue
            # directory-only negations ("!keep/") only match with the slash
            target = path.as_posix() + "/"
        else:
            target = path
        if rule.match(target):
            return not rule.negation
    return False


class IgnoreAwareWalker:
    """Recursive walker that honours nested ignore files.

    Every ignore file found applies to its own directory and everything
    below it, with deeper files taking precedence. File paths are put on
    ``file_queue`` as they are found and the ``_DONE`` sentinel is always
    put last, even if the walk fails. Symlinked directories are not
    followed.
    """

    def __init__(
        self,
        root: Path,
        file_queue: "queue.Queue",
        include_hidden: bool = True,
        excluded_dirs: FrozenSet[str] = ExcludedDirs.DIRS,
        ignore_files: Tuple[str, ...] = IgnoreFiles.NAMES,
    ):
        self.root = Path(root).resolve()
        self.file_queue = file_queue
        self.include_hidden = include_hidden
        self.excluded_dirs = excluded_dirs
        self.ignore_files = ignore_files
        self.error_handler: ErrorHandler = report_walk_error
        self._stopped = False
        self._failure: Optional[Exception] = None
        self._thread: Optional[threading.Thread] = None

    def set_error_handler(self, handler: ErrorHandler) -> None:
        """Handler returning True continues past the error, False stops the walk."""
        self.error_handler = handler

    def start(self) -> None:
        """Walk on a background thread."""
        self._thread = threading.Thread(
            target=self._run, name="catall-walker", daemon=True
        )
        self._thread.start()

    def files(self) -> Iterator[Path]:
        """Yield discovered paths until the walker signals completion."""
        for location in iter(self.file_queue.get, _DONE):
            yield location
        if self._thread is not None:
            self._thread.join()
        if self._failure is not None:
            raise self._failure

    def _run(self) -> None:
        try:
            self.walk()
        except Exception as e:
            self._failure = e
        finally:
            self.file_queue.put(_DONE)

    def walk(self) -> None:
        """Walk synchronously, putting file paths on the queue."""
        stack: List[Tuple[Path, Tuple[IgnoreRule, ...]]] = [
            (self.root, self._load_rules(self.root, ()))
        ]
        while stack and not self._stopped:
            directory, rules = stack.pop()
            try:
                entries = list(directory.iterdir())
            except OSError as e:
                self._handle_error(e)
                continue

            for entry in entries:
                if self._stopped:
                    return
                if not self.include_hidden and entry.name.startswith("."):
                    continue
                try:
                    is_dir = entry.is_dir() and not entry.is_symlink()
                    is_file = not is_dir and entry.is_file()
                except OSError as e:
                    self._handle_error(e)
                    continue

                if is_dir and entry.name in self.excluded_dirs:
                    continue
                if is_ignored(entry, is_dir, rules):
                    logging.debug(f"Ignored by rules: {entry}")
                    continue

                if is_dir:
                    stack.append((entry, self._load_rules(entry, rules)))
                elif is_file:
                    self.file_queue.put(entry)

    def _load_rules(
        self, directory: Path, inherited: Tuple[IgnoreRule, ...]
    ) -> Tuple[IgnoreRule, ...]:
        rules = list(inherited)
        for name in self.ignore_files:
            ignore_file = directory / name
            if not ignore_file.is_file():
                continue
            try:
                rules.extend(load_ignore_rules(ignore_file))
            except (OSError, ValueError) as e:
                self._handle_error(e)
        return tuple(rules)

    def _handle_error(self, error: Exception) -> None:
        if not self.error_handler(error):
            self._stopped = True


# =============================================================================
# OUTPUT TARGET
# =============================================================================

def _fd_path(fd: int) -> Optional[str]:
    """Platform-specific lookup of the path behind a file descriptor."""
    proc = Path(f"/proc/self/fd/{fd}")
    if proc.is_symlink():
        try:
            return os.readlink(proc)
        except OSError:
            return None

    get_path = getattr(fcntl, "F_GETPATH", None) if fcntl else None
    if get_path is not None:
        try:
            buf = fcntl.fcntl(fd, get_path, bytes(1024))
        except OSError:
            return None
        return os.fsdecode(buf.split(b"\0", 1)[0])

    return None


def resolve_output_target(fd: int = 1) -> Optional[Path]:
    """Best-effort path of the regular file ``fd`` writes to, else None."""
    try:
        mode = os.fstat(fd).st_mode
    except OSError:
        return None
    if stat.S_ISCHR(mode):
        return None

    link = _fd_path(fd)
    # pipes and sockets read back as "pipe:[1234]" and similar
    if not link or not Path(link).is_absolute():
        return None
    return Path(link)


# =============================================================================
# FILTER RULES (Strategy Pattern)
# =============================================================================

class FilterRule(ABC):
    """Abstract base for candidate filter rules."""

    @abstractmethod
    def check(self, path: Path, config: CatConfig) -> Tuple[bool, str]:
        """Check if path passes this rule. Returns (passes, reason)."""
        pass


class OutputTargetRule(FilterRule):
    """Skip the file stdout is redirected to."""

    def check(self, path: Path, config: CatConfig) -> Tuple[bool, str]:
        if config.output_target and path == config.output_target:
            return False, "Is the output file"
        return True, ""


class IgnoreFileRule(FilterRule):
    """Skip the ignore files themselves."""

    def check(self, path: Path, config: CatConfig) -> Tuple[bool, str]:
        if path.name in config.ignore_files:
            return False, f"Ignore file: {path.name}"
        return True, ""


class IncludePatternRule(FilterRule):
    """Keep only paths matching --filter."""

    def check(self, path: Path, config: CatConfig) -> Tuple[bool, str]:
        if config.filter_re is None:
            return True, ""
        if not config.filter_re.search(str(path)):
            return False, f"No match for {config.filter_re.pattern!r}"
        return True, ""


class CandidateFilter:
    """Turns the walker's stream into a sorted list of absolute paths."""

    def __init__(self, config: CatConfig):
        self.config = config
        self.rules: List[FilterRule] = [
            OutputTargetRule(),
            IgnoreFileRule(),
            IncludePatternRule(),
        ]

    def should_include(self, path: Path) -> Tuple[bool, str]:
        for rule in self.rules:
            passes, reason = rule.check(path, self.config)
            if not passes:
                return False, reason
        return True, "Passed all filters"

    def collect(self, locations: Iterable[Path]) -> List[Path]:
        """Filter every discovered location, then sort by absolute path."""
        files = []
        for location in locations:
            try:
                abs_path = Path(location).absolute()
            except OSError as e:
                logging.debug(f"Dropped {location}: {e}")
                continue

            ok, reason = self.should_include(abs_path)
            if ok:
                files.append(abs_path)
            else:
                logging.debug(f"Excluded {abs_path}: {reason}")

        # walker order is arbitrary
        return sorted(files, key=str)


# =============================================================================
# RENDERER
# =============================================================================

class Renderer:
    """Writes list or cat output for a sorted list of paths."""

    def __init__(self, config: CatConfig, stream: BinaryIO):
        self.config = config
        self.stream = stream

    def display_path(self, path: Path) -> str:
        """'./'-prefixed, forward-slash path relative to the root."""
        try:
            rel = path.relative_to(self.config.root_dir)
        except ValueError:
            return path.as_posix()
        return "./" + rel.as_posix()

    def render(self, paths: List[Path]) -> None:
        if self.config.list_only:
            self.render_list(paths)
        else:
            self.render_cat(paths)

    def render_list(self, paths: List[Path]) -> None:
        for path in paths:
            self._write_line(self.display_path(path))

    def render_cat(self, paths: List[Path]) -> None:
        self._write_line(INDEX_HEADER)
        for i, path in enumerate(paths, 1):
            self._write_line(f"{i}: {self.display_path(path)}")

        for path in paths:
            self._write(f"\n\n==== {self.display_path(path)} ====\n")
            self._render_file(path)

    def _render_file(self, path: Path) -> None:
        try:
            f = open(path, "rb")
        except OSError as e:
            logging.debug(f"Could not open {path}: {e}")
            self.stream.write(BINARY_MARKER + b"\n")
            return

        with f:
            try:
                kind = classify_stream(f, self.config.sample_size)
                f.seek(0)
            except OSError as e:
                logging.debug(f"Could not read {path}: {e}")
                kind = Classification.BINARY
            if kind is Classification.BINARY:
                self.stream.write(BINARY_MARKER + b"\n")
                return

            while True:
                try:
                    chunk = f.read(self.config.chunk_size)
                except OSError as e:
                    logging.debug(f"Read failed mid-file {path}: {e}")
                    self.stream.write(b"\n" + BINARY_MARKER + b"\n")
                    return
                if not chunk:
                    return
                self.stream.write(chunk)

    def _write(self, text: str) -> None:
        self.stream.write(text.encode("utf-8", "surrogateescape"))

    def _write_line(self, text: str) -> None:
        self._write(text + "\n")


# =============================================================================
# CONFIGURATION BUILDER
# =============================================================================

class ConfigBuilder:
    """Builds CatConfig from CLI arguments."""

    @staticmethod
    def from_args(args: argparse.Namespace) -> CatConfig:
        """Create config from parsed arguments. Raises re.error on a bad --filter."""
        filter_re = re.compile(args.filter) if args.filter else None
        return CatConfig(
            root_dir=Path.cwd().resolve(),
            list_only=args.list,
            filter_re=filter_re,
            output_target=resolve_output_target(),
        )


# =============================================================================
# PIPELINE
# =============================================================================

def discover(config: CatConfig) -> List[Path]:
    """Walk the root on a worker thread and return the sorted candidates."""
    file_queue: "queue.Queue" = queue.Queue(maxsize=config.queue_size)
    walker = IgnoreAwareWalker(
        config.root_dir,
        file_queue,
        include_hidden=config.include_hidden,
        excluded_dirs=config.excluded_dirs,
        ignore_files=config.ignore_files,
    )
    walker.start()
    return CandidateFilter(config).collect(walker.files())


# =============================================================================
# CLI PARSER
# =============================================================================

class VersionAction(argparse.Action):
    """--version that looks up the commit only when asked."""

    def __init__(self, option_strings, dest=argparse.SUPPRESS, default=argparse.SUPPRESS, help=None):
        super().__init__(option_strings=option_strings, dest=dest, default=default, nargs=0, help=help)

    def __call__(self, parser, namespace, values, option_string=None):
        print(version_string(parser.prog))
        parser.exit()


def create_parser() -> argparse.ArgumentParser:
    """Create argument parser."""
    parser = argparse.ArgumentParser(
        prog="catall",
        description="Concatenate and display contents of text files in directory tree respecting ignore files",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  catall --filter '\\.(go|java)$'   # Process Go and Java files
  catall --list --filter '\\.go$'    # List Go files
  catall > context.txt             # The output file is skipped automatically
        """,
    )

    out = parser.add_argument_group("Output Options")
    out.add_argument("--list", action="store_true", help="List matching files only (don't display content)")

    filt = parser.add_argument_group("Filtering")
    filt.add_argument(
        "--filter",
        metavar="REGEX",
        help="Regex pattern to whitelist files by absolute path (e.g. '\\.(go|java)$')",
    )

    meta = parser.add_argument_group("Information")
    meta.add_argument("-v", "--verbose", action="store_true", help="Log skipped files and read errors")
    meta.add_argument("--version", action=VersionAction, help="Show version information and exit")

    return parser


# =============================================================================
# MAIN
# =============================================================================

def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point."""
    parser = create_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(levelname)s: %(message)s",
        stream=sys.stderr,
    )

    try:
        config = ConfigBuilder.from_args(args)
    except re.error as e:
        print(f"❌ Error compiling regex: {e}", file=sys.stderr)
        print("Valid examples: '\\.go$', '\\.(java|kt)$', '/src/.*\\.java$'", file=sys.stderr)
        return 1

    try:
        files = discover(config)

        sys.stdout.flush()
        out = sys.stdout.buffer
        Renderer(config, out).render(files)
        out.flush()
        return 0

    except KeyboardInterrupt:
        print("\n⚠️ Interrupted", file=sys.stderr)
        return 130
    except BrokenPipeError:
        # reader went away (e.g. `catall | head`); stop the exit-time flush from failing again
        devnull = os.open(os.devnull, os.O_WRONLY)
        os.dup2(devnull, sys.stdout.fileno())
        return 0
    except Exception as e:
        logging.exception("Critical error")
        print(f"❌ Error: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
