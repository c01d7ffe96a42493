#!/usr/bin/env python3
"""
git-heat - File Change Heat Map

Counts, per file, how many commits touched that file within a time window,
following renames so that a file's history is attributed to its current name.

Pipeline:
- Commit selection: walk HEAD newest-first, keep commits inside the window
- Commit pairing: (newer, older) pairs, the oldest commit pairs with nothing
- Diff resolution: tree-to-tree path deltas for every pair
- Change aggregation: classify deltas, fold rename chains to the newest name
- Merge: sum partial count tables into one heat map

Author: git-heat maintainers
Version: 1.0.0
"""

import json
import os
import re
import subprocess
import sys
import threading
import time
import traceback
from collections import Counter
from concurrent.futures import Executor, ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import (
    Any,
    Dict,
    Iterable,
    Iterator,
    List,
    NamedTuple,
    Optional,
    Sequence,
    Tuple,
)

import click
import yaml
from dateutil import parser as dateutil_parser
from dateutil.relativedelta import relativedelta
from colorama import Fore, Style, init as colorama_init
from tqdm import tqdm

colorama_init(autoreset=True)

# Version information
VERSION = "1.0.0"

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


# ============================================================================
# ERRORS
# ============================================================================


class HeatError(Exception):
    """Base class for every error raised by git-heat"""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class BackendError(HeatError):
    """
    Failure originating from the repository backend (the git executable).

    Carries the command that failed and whatever git wrote to stderr so the
    problem can be diagnosed without rerunning anything.
    """

    def __init__(
        self,
        message: str,
        command: Optional[Sequence[str]] = None,
        stderr: str = "",
    ):
        super().__init__(message)
        self.command = list(command) if command else []
        self.stderr = stderr.strip()

    def __str__(self) -> str:
        if self.stderr:
            return f"{self.message}: {self.stderr}"
        return self.message


class TimeOutOfRange(HeatError):
    """A commit timestamp or UTC offset cannot be represented as a datetime"""


class DateRangeUnparsable(HeatError):
    """A date-range expression could not be turned into a time window"""


class ConfigError(HeatError):
    """Configuration file missing, unreadable or in an unsupported format"""


# ============================================================================
# DATA STRUCTURES & MODELS
# ============================================================================


@dataclass(frozen=True)
class Commit:
    """
    A commit as exposed by the backend. Read-only.

    The author time fields are None when git printed something that is not
    a number; such commits fail time normalization and are skipped.
    """

    sha: str
    tree: str
    parents: Tuple[str, ...] = ()
    author_seconds: Optional[int] = 0
    author_offset: Optional[int] = 0  # minutes east of UTC


class CommitPair(NamedTuple):
    newer: Commit
    older: Optional[Commit]


class DeltaStatus(Enum):
    ADDED = "added"
    COPIED = "copied"
    DELETED = "deleted"
    MODIFIED = "modified"
    RENAMED = "renamed"
    TYPECHANGE = "typechange"
    UNMODIFIED = "unmodified"
    IGNORED = "ignored"
    UNTRACKED = "untracked"
    UNREADABLE = "unreadable"
    CONFLICTED = "conflicted"


# git diff --name-status letters
STATUS_LETTERS = {
    "A": DeltaStatus.ADDED,
    "C": DeltaStatus.COPIED,
    "D": DeltaStatus.DELETED,
    "M": DeltaStatus.MODIFIED,
    "B": DeltaStatus.MODIFIED,
    "R": DeltaStatus.RENAMED,
    "T": DeltaStatus.TYPECHANGE,
    "U": DeltaStatus.CONFLICTED,
    "X": DeltaStatus.UNREADABLE,
}

DISCARDED_STATUSES = frozenset(
    {
        DeltaStatus.UNMODIFIED,
        DeltaStatus.IGNORED,
        DeltaStatus.UNTRACKED,
        DeltaStatus.UNREADABLE,
        DeltaStatus.CONFLICTED,
    }
)


@dataclass(frozen=True)
class PathDelta:
    """One reported change for a single path between two trees"""

    status: DeltaStatus
    old_path: Optional[str] = None
    new_path: Optional[str] = None


@dataclass(frozen=True)
class DiffOptions:
    """
    Change-detection policy for tree-to-tree diffs.

    Only path-level status is consumed, so content inspection is kept to a
    minimum: whitespace-only differences never influence classification and
    binary/textconv handling is skipped.
    """

    include_typechange: bool = True
    find_renames: bool = True
    ignore_whitespace: bool = True
    ignore_whitespace_eol: bool = True
    ignore_whitespace_change: bool = True
    ignore_blank_lines: bool = True
    skip_binary_check: bool = True

    def to_git_args(self) -> List[str]:
        args = ["--find-renames" if self.find_renames else "--no-renames"]
        if self.ignore_whitespace:
            args.append("--ignore-all-space")
        if self.ignore_whitespace_eol:
            args.append("--ignore-space-at-eol")
        if self.ignore_whitespace_change:
            args.append("--ignore-space-change")
        if self.ignore_blank_lines:
            args.append("--ignore-blank-lines")
        if self.skip_binary_check:
            args.extend(["--no-ext-diff", "--no-textconv"])
        return args


@dataclass(frozen=True)
class TimeWindow:
    """
    Inclusive (start, end) window, both bounds normalized to UTC.

    Naive datetimes are taken to be UTC. An inverted window is allowed and
    simply contains nothing.
    """

    start: datetime
    end: datetime

    def __post_init__(self):
        object.__setattr__(self, "start", to_utc(self.start))
        object.__setattr__(self, "end", to_utc(self.end))

    @classmethod
    def full(cls) -> "TimeWindow":
        """From the Unix epoch until now"""
        return cls(EPOCH, datetime.now(timezone.utc))

    def contains(self, instant: datetime) -> bool:
        return self.start <= instant <= self.end


@dataclass
class RunStats:
    """Counters collected while computing a heat map"""

    commits_processed: int = 0
    deltas_seen: int = 0
    files_changed: int = 0
    renames_tracked: int = 0
    elapsed_seconds: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "commits_processed": self.commits_processed,
            "deltas_seen": self.deltas_seen,
            "files_changed": self.files_changed,
            "renames_tracked": self.renames_tracked,
            "elapsed_seconds": round(self.elapsed_seconds, 2),
        }


# ============================================================================
# TIME NORMALIZATION
# ============================================================================


def to_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def normalize_time(seconds: int, offset_minutes: int) -> datetime:
    """
    Convert a backend timestamp with its UTC offset into an aware datetime.

    Args:
        seconds: Seconds since the Unix epoch
        offset_minutes: Offset from UTC in minutes (east positive)

    Returns:
        Aware datetime expressed at the given offset

    Raises:
        TimeOutOfRange: the timestamp or the offset cannot be represented
    """
    try:
        tz = timezone(timedelta(minutes=offset_minutes))
        return datetime.fromtimestamp(seconds, tz)
    except (OverflowError, OSError, ValueError, TypeError) as e:
        raise TimeOutOfRange(
            f"cannot represent timestamp {seconds!r} with offset {offset_minutes!r}: {e}"
        ) from e


def parse_raw_offset(raw: str) -> int:
    """
    Parse git's raw '+HHMM' / '-HHMM' offset into minutes.

    git prints whatever digits the commit header holds, so '+123456' is
    accepted here (hours 1234, minutes 56) and rejected later by
    normalize_time.
    """
    if len(raw) < 2 or raw[0] not in "+-" or not raw[1:].isdigit():
        raise ValueError(f"malformed UTC offset: {raw!r}")
    value = int(raw[1:])
    minutes = (value // 100) * 60 + value % 100
    return -minutes if raw[0] == "-" else minutes


def parse_raw_date(raw: str) -> Tuple[Optional[int], Optional[int]]:
    """
    Split git's '--date=raw' value into (seconds, offset minutes).

    A field that is not a number comes back as None.
    """
    parts = raw.split()
    if len(parts) != 2:
        return None, None

    seconds, offset = parts
    try:
        parsed_seconds = int(seconds)
    except ValueError:
        parsed_seconds = None
    try:
        parsed_offset = parse_raw_offset(offset)
    except ValueError:
        parsed_offset = None
    return parsed_seconds, parsed_offset


# ============================================================================
# REPOSITORY BACKEND
# ============================================================================


class GitRepository:
    """
    Thin wrapper around the git executable.

    Traversal streams `git log` output so commits are produced lazily; all
    other operations are one-shot `git` invocations.
    """

    LOG_FORMAT = "%H%x00%T%x00%P%x00%ad"

    def __init__(self, repo_path: str):
        self.repo_path = os.path.abspath(repo_path)
        self._empty_tree = None

    @classmethod
    def open(cls, repo_path: str) -> "GitRepository":
        """Open a repository, raising BackendError if it is not one"""
        if not os.path.isdir(repo_path):
            raise BackendError(f"Not a git repository: {repo_path}")
        repo = cls(repo_path)
        repo._run("rev-parse", "--git-dir")
        return repo

    def _command(self, *args: str) -> List[str]:
        return ["git", "-C", self.repo_path, *args]

    def _run(self, *args: str, input_text: Optional[str] = None) -> str:
        cmd = self._command(*args)
        try:
            result = subprocess.run(
                cmd,
                input=input_text,
                capture_output=True,
                text=True,
                encoding="utf-8",
                errors="replace",
            )
        except FileNotFoundError as e:
            raise BackendError("git executable not found", cmd) from e

        if result.returncode != 0:
            raise BackendError(
                f"git {args[0]} failed in {self.repo_path}", cmd, result.stderr
            )
        return result.stdout

    def has_head(self) -> bool:
        """False for a repository whose HEAD is unborn (no commits yet)"""
        try:
            self._run("rev-parse", "--verify", "--quiet", "HEAD^{commit}")
        except BackendError:
            return False
        return True

    def empty_tree(self) -> str:
        """Object id of the empty tree for this repository's hash algorithm"""
        if self._empty_tree is None:
            self._empty_tree = self._run(
                "hash-object", "-t", "tree", "--stdin", input_text=""
            ).strip()
        return self._empty_tree

    def iter_commits(self) -> Iterator[Commit]:
        """
        Yield commits reachable from HEAD, newest first, children before parents.
        """
        if not self.has_head():
            return

        cmd = self._command(
            "-c",
            "log.showSignature=false",
            "log",
            "--no-color",
            "--date-order",
            "--date=raw",
            f"--format={self.LOG_FORMAT}",
            "HEAD",
        )
        try:
            process = subprocess.Popen(
                cmd,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                encoding="utf-8",
                errors="replace",
            )
        except FileNotFoundError as e:
            raise BackendError("git executable not found", cmd) from e

        stderr_chunks: List[str] = []

        def drain_stderr():
            for chunk in iter(lambda: process.stderr.read(8192), ""):
                stderr_chunks.append(chunk)

        stderr_thread = threading.Thread(
            target=drain_stderr, name="git-log-stderr", daemon=True
        )
        stderr_thread.start()

        try:
            for line in process.stdout:
                line = line.rstrip("\n")
                if line:
                    yield self._parse_log_line(line, cmd)

            process.wait()
            stderr_thread.join()
            if process.returncode != 0:
                raise BackendError("git log failed", cmd, "".join(stderr_chunks))
        finally:
            # consumer stopped early
            if process.poll() is None:
                process.kill()
                process.wait()
            process.stdout.close()
            stderr_thread.join()
            process.stderr.close()

    @staticmethod
    def _parse_log_line(line: str, cmd: Sequence[str]) -> Commit:
        parts = line.split("\x00")
        if len(parts) != 4:
            raise BackendError(f"Unexpected git log line: {line!r}", cmd)

        sha, tree, parents, raw_date = parts
        seconds, offset = parse_raw_date(raw_date)
        return Commit(
            sha=sha,
            tree=tree,
            parents=tuple(parents.split()),
            author_seconds=seconds,
            author_offset=offset,
        )

    def diff_trees(
        self, old_tree: str, new_tree: str, options: DiffOptions
    ) -> List[PathDelta]:
        """Path-level differences between two tree objects"""
        output = self._run(
            "diff-tree",
            "-r",
            "-z",
            "--name-status",
            "--no-color",
            *options.to_git_args(),
            old_tree,
            new_tree,
        )
        return parse_name_status(output, include_typechange=options.include_typechange)


def parse_name_status(output: str, include_typechange: bool = True) -> List[PathDelta]:
    """
    Parse `git diff-tree -z --name-status` output into PathDelta records.

    Rename and copy entries carry a similarity score and two paths
    (``R087\\0old\\0new``); every other entry carries a single path.
    """
    tokens = output.split("\x00")
    if tokens and tokens[-1] == "":
        tokens.pop()

    deltas = []
    i = 0
    while i < len(tokens):
        code = tokens[i]
        status = STATUS_LETTERS.get(code[:1])
        if status is None:
            raise BackendError(f"Unknown diff status {code!r}")

        if status in (DeltaStatus.RENAMED, DeltaStatus.COPIED):
            if i + 2 >= len(tokens):
                raise BackendError(f"Truncated diff entry for status {code!r}")
            deltas.append(PathDelta(status, tokens[i + 1], tokens[i + 2]))
            i += 3
            continue

        if i + 1 >= len(tokens):
            raise BackendError(f"Truncated diff entry for status {code!r}")
        path = tokens[i + 1]
        i += 2

        if status == DeltaStatus.ADDED:
            deltas.append(PathDelta(status, None, path))
        elif status == DeltaStatus.DELETED:
            deltas.append(PathDelta(status, path, None))
        elif status == DeltaStatus.TYPECHANGE and not include_typechange:
            deltas.append(PathDelta(DeltaStatus.DELETED, path, None))
            deltas.append(PathDelta(DeltaStatus.ADDED, None, path))
        else:
            deltas.append(PathDelta(status, path, path))

    return deltas


# ============================================================================
# PROGRESS REPORTING & CLI ENHANCEMENTS
# ============================================================================


class ProgressReporter:
    """
    Status output for the CLI.
    - Color-coded messages (colorama)
    - Progress bar over diffed commit pairs (tqdm)

    Everything goes to stderr; stdout is reserved for the heat map itself.
    """

    def __init__(
        self, quiet: bool = False, verbose: bool = False, use_colors: bool = True
    ):
        self.quiet = quiet
        self.verbose = verbose
        self.use_colors = use_colors
        self.start_time = time.time()
        self.stage_times = {}

    def _colorize(self, text: str, color: str) -> str:
        if self.use_colors:
            return f"{color}{text}{Style.RESET_ALL}"
        return text

    def _emit(self, text: str):
        print(text, file=sys.stderr)

    def stage_start(self, stage_name: str, message: str = ""):
        """Mark the start of a processing stage"""
        if self.quiet:
            return
        self.stage_times[stage_name] = time.time()

        stage_text = self._colorize(f"🔄 {stage_name}", Fore.BLUE + Style.BRIGHT)
        self._emit(stage_text)
        if message:
            self._emit(f"   {message}")

    def stage_complete(self, stage_name: str, stats: Dict = None):
        """Mark completion of a processing stage"""
        if self.quiet:
            return
        elapsed = time.time() - self.stage_times.get(stage_name, time.time())

        self._emit(
            self._colorize(
                f"✅ {stage_name} complete ({elapsed:.2f}s)", Fore.GREEN + Style.BRIGHT
            )
        )

        if stats and self.verbose:
            for key, value in stats.items():
                self._emit(f"   {key}: {value}")

    def create_progress_bar(self, total: int, desc: str = "Processing") -> Optional[tqdm]:
        if self.quiet:
            return None

        return tqdm(
            total=total,
            desc=self._colorize(desc, Fore.CYAN),
            unit=" pairs",
            ncols=100,
            file=sys.stderr,
            bar_format="{l_bar}{bar}| {n_fmt}/{total_fmt} [{elapsed}<{remaining}, {rate_fmt}]",
        )

    def info(self, message: str):
        if not self.quiet:
            self._emit(f"{self._colorize('ℹ️  ', Fore.BLUE)}{message}")

    def debug(self, message: str):
        """Only shown with --verbose"""
        if self.verbose and not self.quiet:
            self._emit(self._colorize(f"   {message}", Style.DIM))

    def warning(self, message: str):
        if not self.quiet:
            self._emit(f"{self._colorize('⚠️  ', Fore.YELLOW + Style.BRIGHT)}{message}")

    def error(self, message: str):
        """Display error message (always shown)"""
        self._emit(self._colorize(f"❌ ERROR: {message}", Fore.RED + Style.BRIGHT))

    def success(self, message: str):
        if not self.quiet:
            self._emit(self._colorize(f"✨ {message}", Fore.GREEN + Style.BRIGHT))

    def summary(self, stats: Dict[str, Any]):
        """Display final summary"""
        if self.quiet:
            return
        elapsed = time.time() - self.start_time

        separator = self._colorize("=" * 70, Fore.CYAN)
        self._emit(f"\n{separator}")
        self._emit(self._colorize("📊 HEAT MAP SUMMARY", Fore.MAGENTA + Style.BRIGHT))
        self._emit(separator)
        for key, value in stats.items():
            self._emit(f"   {key}: {value}")
        self._emit(self._colorize(f"⏱️  Total time: {elapsed:.2f}s", Fore.YELLOW))
        self._emit(separator)


# ============================================================================
# COMMIT SELECTION & PAIRING
# ============================================================================


def commits_in_date_range(
    start: datetime,
    end: datetime,
    repo,
    reporter: Optional[ProgressReporter] = None,
) -> Iterator[Commit]:
    """
    Lazily yield the commits reachable from HEAD whose author time falls
    within [start, end], newest first.

    Both bounds are normalized to UTC before comparing. Commits whose
    timestamp cannot be represented are skipped rather than aborting the
    walk.
    """
    window = TimeWindow(start, end)

    for commit in repo.iter_commits():
        try:
            authored = normalize_time(commit.author_seconds, commit.author_offset)
        except TimeOutOfRange as e:
            if reporter:
                reporter.debug(f"Skipping commit {commit.sha[:12]}: {e}")
            continue

        if window.contains(authored):
            yield commit


def pair_commits(commits: Iterable[Commit]) -> Iterator[CommitPair]:
    """
    Pair every commit with the one following it in the sequence.

    >>> [tuple(p) for p in pair_commits(["a", "b", "c"])]
    [('a', 'b'), ('b', 'c'), ('c', None)]
    """
    iterator = iter(commits)
    try:
        current = next(iterator)
    except StopIteration:
        return

    for following in iterator:
        yield CommitPair(current, following)
        current = following

    yield CommitPair(current, None)


# ============================================================================
# DIFF RESOLUTION
# ============================================================================


def get_diff_of_commits(
    older: Optional[Commit],
    newer: Commit,
    repo,
    options: Optional[DiffOptions] = None,
) -> List[PathDelta]:
    """
    Path-level changes that turn `older` into `newer`.

    Without an `older` commit the diff is taken against the empty tree, so
    every file in `newer` is reported as added.
    """
    old_tree = older.tree if older is not None else repo.empty_tree()
    return repo.diff_trees(old_tree, newer.tree, options or DiffOptions())


# ============================================================================
# CHANGE AGGREGATION
# ============================================================================


class RenameTable:
    """
    Historical path -> newest known path, safe to share between threads.

    Entries always point at a path that was terminal when inserted, and a
    path is never mapped onto itself, so following the chain from any key
    terminates.
    """

    def __init__(self):
        self._renames: Dict[str, str] = {}
        self._lock = threading.Lock()

    def _follow(self, path: str) -> str:
        while path in self._renames:
            path = self._renames[path]
        return path

    def resolve(self, path: str) -> str:
        with self._lock:
            return self._follow(path)

    def record(self, old_path: str, new_path: str) -> str:
        """Store a rename and return the newest name it resolves to"""
        with self._lock:
            target = self._follow(new_path)
            # renamed away and later back again
            if target != old_path:
                self._renames[old_path] = target
            return target

    def __contains__(self, path: str) -> bool:
        with self._lock:
            return path in self._renames

    def __len__(self) -> int:
        with self._lock:
            return len(self._renames)


def resolve_delta(delta: PathDelta, renames: RenameTable) -> Optional[str]:
    """Path a delta is attributed to, or None if it is not counted"""
    status = delta.status

    if status in DISCARDED_STATUSES:
        return None
    if status in (DeltaStatus.ADDED, DeltaStatus.COPIED):
        return renames.resolve(delta.new_path)
    if status == DeltaStatus.DELETED:
        return delta.old_path
    if status in (DeltaStatus.RENAMED, DeltaStatus.TYPECHANGE):
        return renames.record(delta.old_path, delta.new_path)
    # modified
    return renames.resolve(delta.old_path)


def get_files_changed(deltas: Iterable[PathDelta], renames: RenameTable) -> Counter:
    """
    Count the paths touched by one diff.

    `renames` is shared across diffs and must be fed in newest-first commit
    order: a modification of an old name only lands on the current name if
    every later rename has already been recorded.
    """
    changes = Counter()
    for delta in deltas:
        filename = resolve_delta(delta, renames)
        if filename is not None:
            changes[filename] += 1
    return changes


# ============================================================================
# MERGE
# ============================================================================


def merge_changes(*tables: Dict[str, int]) -> Counter:
    """Sum per-path counts; paths missing from a table count as 0"""
    merged = Counter()
    for table in tables:
        for path, count in table.items():
            merged[path] += count
    return merged


def parallel_merge(tables: Iterable[Dict[str, int]], executor: Executor) -> Counter:
    """Pairwise tree fold of partial tables on `executor`"""
    pending = list(tables)
    if not pending:
        return Counter()

    while len(pending) > 1:
        groups = [pending[i : i + 2] for i in range(0, len(pending), 2)]
        pending = list(executor.map(lambda group: merge_changes(*group), groups))

    return merge_changes(pending[0])


# ============================================================================
# ANALYZER
# ============================================================================


class HeatAnalyzer:
    """
    Runs the whole pipeline for one repository.

    Diffs may be computed on a worker pool (`jobs` > 1) but their results
    are always drained into the rename table in commit order.
    """

    def __init__(
        self,
        repo,
        reporter: Optional[ProgressReporter] = None,
        jobs: int = 1,
        diff_options: Optional[DiffOptions] = None,
    ):
        self.repo = repo
        self.reporter = reporter or ProgressReporter(quiet=True)
        self.jobs = max(1, jobs)
        self.diff_options = diff_options or DiffOptions()
        self.renames = RenameTable()
        self.stats = RunStats()

    def select_pairs(self, window: TimeWindow) -> List[CommitPair]:
        commits = commits_in_date_range(
            window.start, window.end, self.repo, self.reporter
        )
        return list(pair_commits(commits))

    def _diff_pair(self, pair: CommitPair) -> List[PathDelta]:
        return get_diff_of_commits(pair.older, pair.newer, self.repo, self.diff_options)

    def _aggregate(self, deltas: List[PathDelta], progress_bar) -> Counter:
        self.stats.deltas_seen += len(deltas)
        changes = get_files_changed(deltas, self.renames)
        if progress_bar:
            progress_bar.update(1)
        return changes

    def analyze(self, window: TimeWindow) -> Counter:
        """Compute the heat map for `window`"""
        start_time = time.time()
        self.renames = RenameTable()
        self.stats = RunStats()

        self.reporter.stage_start(
            "Commit Selection",
            f"{window.start.isoformat()} .. {window.end.isoformat()}",
        )
        pairs = self.select_pairs(window)
        self.stats.commits_processed = len(pairs)
        self.reporter.stage_complete(
            "Commit Selection", {"Commits selected": f"{len(pairs):,}"}
        )

        self.reporter.stage_start("Diff Aggregation", f"Workers: {self.jobs}")
        progress_bar = self.reporter.create_progress_bar(
            total=len(pairs), desc="Diffing commits"
        )
        try:
            if self.jobs > 1:
                with ThreadPoolExecutor(max_workers=self.jobs) as executor:
                    # map() yields results in submission (commit) order
                    partials = [
                        self._aggregate(deltas, progress_bar)
                        for deltas in executor.map(self._diff_pair, pairs)
                    ]
                    changes = parallel_merge(partials, executor)
            else:
                partials = [
                    self._aggregate(self._diff_pair(pair), progress_bar)
                    for pair in pairs
                ]
                changes = merge_changes(*partials)
        finally:
            if progress_bar:
                progress_bar.close()

        self.stats.files_changed = len(changes)
        self.stats.renames_tracked = len(self.renames)
        self.stats.elapsed_seconds = time.time() - start_time
        self.reporter.stage_complete(
            "Diff Aggregation",
            {
                "Deltas seen": f"{self.stats.deltas_seen:,}",
                "Files changed": f"{self.stats.files_changed:,}",
                "Renames tracked": f"{self.stats.renames_tracked:,}",
            },
        )
        return changes


# ============================================================================
# DATE RANGE PARSING
# ============================================================================


RELATIVE_UNITS = ("second", "minute", "hour", "day", "week", "month", "year")

RELATIVE_AGO = re.compile(
    r"^(\d+) (%s)s? ago$" % "|".join(RELATIVE_UNITS), re.IGNORECASE
)
RELATIVE_LAST = re.compile(r"^last (day|week|month|year)$", re.IGNORECASE)


def _parse_relative(text: str, now: datetime) -> Optional[datetime]:
    """'3 weeks ago', '2.days.ago', 'last month', 'today', 'yesterday', 'now'"""
    phrase = re.sub(r"[.\s]+", " ", text).strip().lower()
    midnight = now.replace(hour=0, minute=0, second=0, microsecond=0)

    if phrase == "now":
        return now
    if phrase == "today":
        return midnight
    if phrase == "yesterday":
        return midnight - relativedelta(days=1)

    match = RELATIVE_AGO.match(phrase)
    if match:
        amount, unit = int(match.group(1)), match.group(2)
    else:
        match = RELATIVE_LAST.match(phrase)
        if not match:
            return None
        amount, unit = 1, match.group(1)

    try:
        return now - relativedelta(**{f"{unit}s": amount})
    except (OverflowError, ValueError) as e:
        raise DateRangeUnparsable(f"date out of range: {text!r}") from e


def parse_date_bound(
    text: str, end_of_day: bool = False, now: Optional[datetime] = None
) -> datetime:
    """
    Parse one side of a date range.

    Accepts ISO 8601 dates and datetimes, relative phrases ('2 weeks ago',
    'last month', 'yesterday') and free-form dates dateutil understands
    ('March 3 2024'). Naive values are UTC. A bare day used as an upper
    bound covers that whole day.

    Raises:
        DateRangeUnparsable: nothing could make sense of `text`
    """
    text = text.strip()
    now = to_utc(now) if now is not None else datetime.now(timezone.utc)
    whole_day = False

    try:
        parsed = dateutil_parser.isoparse(text)
        whole_day = len(text) == 10
    except ValueError:
        parsed = _parse_relative(text, now)
        if parsed is not None:
            whole_day = text.lower() in ("today", "yesterday")

    if parsed is None:
        midnight = now.replace(hour=0, minute=0, second=0, microsecond=0, tzinfo=None)
        try:
            parsed = dateutil_parser.parse(text, default=midnight)
        except (ValueError, OverflowError) as e:
            raise DateRangeUnparsable(f"cannot parse date {text!r}") from e

    if end_of_day and whole_day:
        parsed = parsed + timedelta(days=1, microseconds=-1)
    return to_utc(parsed)


def parse_date_range(
    expression: Optional[str], now: Optional[datetime] = None
) -> TimeWindow:
    """
    Turn 'FROM..TO' into a TimeWindow.

    Either side may be empty (epoch / now). An expression without '..' is
    taken as the lower bound.
    """
    now = to_utc(now) if now is not None else datetime.now(timezone.utc)
    if expression is None or not expression.strip():
        return TimeWindow(EPOCH, now)

    if ".." in expression:
        since, until = expression.split("..", 1)
    else:
        since, until = expression, ""

    start = parse_date_bound(since, now=now) if since.strip() else EPOCH
    if until.strip():
        end = parse_date_bound(until, end_of_day=True, now=now)
    else:
        end = now
    return TimeWindow(start, end)


# ============================================================================
# OUTPUT
# ============================================================================


OUTPUT_FORMATS = ("text", "json")


def sort_changes(
    changes: Dict[str, int], min_count: int = 1, limit: Optional[int] = None
) -> List[Tuple[str, int]]:
    """Hottest first, ties broken by path"""
    rows = [(path, count) for path, count in changes.items() if count >= min_count]
    rows.sort(key=lambda row: (-row[1], row[0]))
    if limit is not None:
        rows = rows[:limit]
    return rows


def format_text(rows: List[Tuple[str, int]]) -> str:
    return "\n".join(f"{path}: {count}" for path, count in rows)


def format_json(rows: List[Tuple[str, int]]) -> str:
    return json.dumps(
        [{"path": path, "count": count} for path, count in rows],
        indent=2,
        ensure_ascii=False,
    )


def render(rows: List[Tuple[str, int]], output_format: str) -> str:
    if output_format == "json":
        return format_json(rows)
    if output_format == "text":
        return format_text(rows)
    raise ValueError(f"Unsupported output format: {output_format}")


# ============================================================================
# CONFIGURATION FILE SUPPORT
# ============================================================================


CONFIG_NAMES = (".git-heat.yaml", ".git-heat.yml", ".git-heat.json")


def load_config_file(config_path: str) -> Dict[str, Any]:
    """Load configuration from a YAML or JSON file"""
    if not os.path.exists(config_path):
        raise ConfigError(f"Configuration file not found: {config_path}")

    file_ext = os.path.splitext(config_path)[1].lower()
    if file_ext not in (".yaml", ".yml", ".json"):
        raise ConfigError(f"Unsupported config file format: {file_ext}")

    try:
        with open(config_path, "r", encoding="utf-8") as f:
            if file_ext == ".json":
                data = json.load(f)
            else:
                data = yaml.safe_load(f)
    except (OSError, ValueError, yaml.YAMLError) as e:
        raise ConfigError(f"Failed to read {config_path}: {e}") from e

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"{config_path} must contain a mapping")
    return data


def find_config_file(repo_path: str) -> Optional[str]:
    """
    Auto-discover a configuration file in the repository or current directory.
    """
    for search_dir in (repo_path, os.getcwd()):
        for config_name in CONFIG_NAMES:
            config_path = os.path.join(search_dir, config_name)
            if os.path.exists(config_path):
                return config_path
    return None


class ConfigResolver:
    """
    Resolve configuration with precedence: CLI > Config File > Defaults
    """

    def __init__(
        self,
        cli_args: Dict[str, Any],
        config_path: Optional[str],
        repo_path: str,
    ):
        self.cli = {k: v for k, v in cli_args.items() if v is not None}
        self.config = {}
        self.source = None
        self.load_error = None

        if config_path:
            self.config = load_config_file(config_path)
            self.source = config_path
        else:
            auto_path = find_config_file(repo_path)
            if auto_path:
                try:
                    self.config = load_config_file(auto_path)
                    self.source = auto_path
                except ConfigError as e:
                    self.load_error = e

        # kebab-case keys are accepted in files
        self.config = {k.replace("-", "_"): v for k, v in self.config.items()}

    def get(self, key: str, default: Any = None) -> Any:
        if key in self.cli:
            return self.cli[key]
        if key in self.config:
            return self.config[key]
        return default

    def get_int(
        self, key: str, default: Optional[int] = None, minimum: int = 1
    ) -> Optional[int]:
        """Integer setting of at least `minimum`, ConfigError otherwise"""
        value = self.get(key, default)
        if value is None:
            return None
        # bool is an int subclass
        if isinstance(value, bool):
            raise ConfigError(f"{key} must be an integer, got {value!r}")
        try:
            number = int(value)
        except (TypeError, ValueError):
            raise ConfigError(f"{key} must be an integer, got {value!r}") from None
        if number < minimum:
            raise ConfigError(f"{key} must be at least {minimum}, got {number}")
        return number


# ============================================================================
# CLI INTERFACE
# ============================================================================


@click.command(context_settings=dict(help_option_names=["-h", "--help"]))
@click.argument(
    "repo_path",
    type=click.Path(file_okay=False, resolve_path=True),
    default=".",
    required=False,
)
@click.option(
    "-r",
    "--range",
    "date_range",
    help="Date range FROM..TO, e.g. '2024-01-01..2024-06-30' or '3 months ago..'",
)
@click.option(
    "-m",
    "--min-count",
    type=click.IntRange(min=1),
    help="Only report files changed at least this many times",
)
@click.option(
    "-f",
    "--format",
    "output_format",
    type=click.Choice(OUTPUT_FORMATS),
    help="Output format (default: text)",
)
@click.option("-n", "--limit", type=click.IntRange(min=1), help="Show only the top N files")
@click.option(
    "-o",
    "--output",
    type=click.Path(dir_okay=False),
    help="Write the heat map to a file instead of stdout",
)
@click.option(
    "-j", "--jobs", type=click.IntRange(min=1), help="Worker threads for diffing"
)
@click.option(
    "--config",
    type=click.Path(exists=True, dir_okay=False),
    help="Configuration file path (.yaml or .json)",
)
@click.option("-q", "--quiet", is_flag=True, default=None, help="Suppress progress output")
@click.option(
    "-v", "--verbose", is_flag=True, default=None, help="Show detailed progress information"
)
@click.option("--no-color", is_flag=True, default=None, help="Disable colored output")
@click.version_option(version=VERSION)
def main(repo_path, config, **kwargs):
    """
    Count how many commits touched each file in REPO_PATH (default: current
    directory), following renames to each file's current name.
    """
    try:
        resolver = ConfigResolver(kwargs, config, repo_path)
    except ConfigError as e:
        ProgressReporter().error(str(e))
        sys.exit(1)

    quiet = resolver.get("quiet", False)
    verbose = resolver.get("verbose", False)
    reporter = ProgressReporter(
        quiet=quiet, verbose=verbose, use_colors=not resolver.get("no_color", False)
    )

    if resolver.source:
        reporter.info(f"Using configuration: {resolver.source}")
    if resolver.load_error:
        reporter.warning(f"Found config file but failed to load: {resolver.load_error}")

    output_format = resolver.get("output_format", resolver.get("format", "text"))
    if output_format not in OUTPUT_FORMATS:
        reporter.error(f"Unsupported output format: {output_format}")
        sys.exit(1)

    try:
        jobs = resolver.get_int("jobs", 1)
        min_count = resolver.get_int("min_count", 1)
        limit = resolver.get_int("limit")
    except ConfigError as e:
        reporter.error(f"Invalid configuration: {e}")
        sys.exit(1)

    try:
        repo = GitRepository.open(repo_path)
    except BackendError as e:
        reporter.error(f"Not a git repository: {repo_path} ({e})")
        sys.exit(1)

    date_range = resolver.get("date_range", resolver.get("range"))
    try:
        window = parse_date_range(date_range)
    except DateRangeUnparsable as e:
        reporter.warning(f"{e}; falling back to the full history")
        window = TimeWindow.full()

    analyzer = HeatAnalyzer(repo, reporter, jobs=jobs)
    try:
        changes = analyzer.analyze(window)
    except HeatError as e:
        reporter.error(f"Analysis failed: {e}")
        if verbose:
            traceback.print_exc()
        sys.exit(1)

    rows = sort_changes(changes, min_count=min_count, limit=limit)
    rendered = render(rows, output_format)

    output = resolver.get("output")
    if output:
        with open(output, "w", encoding="utf-8") as f:
            f.write(rendered + "\n")
        reporter.success(f"Heat map written to: {output}")
    elif rows or output_format == "json":
        click.echo(rendered)
    else:
        reporter.info("No file changes in the selected range")

    summary_stats = {
        "Repository": repo.repo_path,
        "Window": f"{window.start.isoformat()} .. {window.end.isoformat()}",
        "Files reported": f"{len(rows):,}",
    }
    for key, value in analyzer.stats.to_dict().items():
        summary_stats[key.replace("_", " ").capitalize()] = value
    reporter.summary(summary_stats)


if __name__ == "__main__":
    main()
