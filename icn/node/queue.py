"""
ICN Proposal Store - directory-backed proposal queue.

Filename convention (the on-disk name is the source of truth for status):

    proposal_<id>_<status>.dsl     status in pending|executing|completed|failed|rejected
    proposal_<id>.dsl              implicitly pending

Any other `*.dsl` file dropped into the queue is adopted on the next scan by
renaming it to `proposal_<stem>_pending.dsl`.

A status change is a single rename inside the queue directory. The typed
index kept here is derived from the directory, rebuilt at startup and
refreshed by rescanning whenever it misses.

Lifecycle:
    pending -> executing -> completed | failed
    pending -> rejected

A re-submitted id can reach a terminal status its earlier attempt already
holds; the earlier file is then renamed to `<name>.<timestamp>`, which no
scan matches.
"""

from __future__ import annotations

import logging
import os
import re
import shutil
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from .engine import Engine, EngineOptions
from .errors import IoError, QueueError
from .models import Proposal, ProposalStatus, utcnow, format_timestamp

logger = logging.getLogger(__name__)

PROPOSAL_SUFFIX = ".dsl"

_NAME_RE = re.compile(
    r"^proposal_(?P<id>.+?)(?:_(?P<status>pending|executing|completed|failed|rejected))?$"
)
_ADOPTABLE_STEM_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9.-]*$")


def parse_filename(filename: str) -> Tuple[str, ProposalStatus]:
    """Split a proposal filename into (id, status)."""
    if not filename.endswith(PROPOSAL_SUFFIX):
        raise QueueError(f"Invalid proposal filename format: {filename}")
    match = _NAME_RE.match(filename[: -len(PROPOSAL_SUFFIX)])
    if match is None:
        raise QueueError(f"Invalid proposal filename format: {filename}")
    status = match.group("status")
    return match.group("id"), ProposalStatus(status) if status else ProposalStatus.PENDING


def extract_id(filename: str) -> str:
    return parse_filename(filename)[0]


def proposal_filename(proposal_id: str, status: ProposalStatus) -> str:
    return f"proposal_{proposal_id}_{status.value}{PROPOSAL_SUFFIX}"


def proposal_sort_key(proposal_id: str) -> Tuple[int, int, str]:
    """Numeric ids first in numeric order, then the rest lexicographically."""
    if proposal_id.isdigit():
        return (0, int(proposal_id), proposal_id)
    return (1, 0, proposal_id)


class ProposalStore:
    """Queue directory, archive directory and rejection log."""

    def __init__(self, queue_dir: Path, executed_dir: Path, rejected_log: Path) -> None:
        self._queue_dir = Path(queue_dir)
        self._executed_dir = Path(executed_dir)
        self._rejected_log = Path(rejected_log)
        self._index: Dict[str, ProposalStatus] = {}
        self._lock = threading.Lock()

    @property
    def queue_dir(self) -> Path:
        return self._queue_dir

    @property
    def executed_dir(self) -> Path:
        return self._executed_dir

    def ensure_dirs(self) -> None:
        try:
            self._queue_dir.mkdir(parents=True, exist_ok=True)
            self._executed_dir.mkdir(parents=True, exist_ok=True)
            self._rejected_log.parent.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise IoError(f"Failed to create queue directories: {exc}") from exc

    def owns(self, path: Path) -> bool:
        """True iff `path` sits directly in the queue directory."""
        return Path(path).resolve().parent == self._queue_dir.resolve()

    # -------------------------------------------------------------------------
    # Scanning
    # -------------------------------------------------------------------------

    def _scan_dir(self, directory: Path) -> List[Tuple[str, ProposalStatus, Path]]:
        entries: List[Tuple[str, ProposalStatus, Path]] = []
        if not directory.exists():
            return entries
        try:
            children = sorted(directory.iterdir())
        except OSError as exc:
            raise IoError(f"Failed to scan {directory}: {exc}") from exc
        for path in children:
            if not path.is_file() or path.suffix != PROPOSAL_SUFFIX:
                continue
            try:
                proposal_id, status = parse_filename(path.name)
            except QueueError:
                continue
            entries.append((proposal_id, status, path))
        return entries

    def scan(self) -> List[Tuple[str, ProposalStatus, Path]]:
        """All conventionally named proposal files in the queue directory."""
        return self._scan_dir(self._queue_dir)

    def rebuild_index(self) -> Dict[str, ProposalStatus]:
        """Rebuild {id: status} from the queue and archive directories."""
        index: Dict[str, ProposalStatus] = {}
        for proposal_id, status, _ in self.scan():
            current = index.get(proposal_id)
            # pending re-submissions do not mask a further-along file
            if current is None or current is ProposalStatus.PENDING:
                index[proposal_id] = status
        for proposal_id, _, _ in self._scan_dir(self._executed_dir):
            index[proposal_id] = ProposalStatus.COMPLETED
        with self._lock:
            self._index = index
        logger.debug(f"Proposal index rebuilt: {len(index)} entries")
        return dict(index)

    def index(self) -> Dict[str, ProposalStatus]:
        with self._lock:
            return dict(self._index)

    def status_of(self, proposal_id: str) -> Optional[ProposalStatus]:
        with self._lock:
            status = self._index.get(proposal_id)
        if status is None:
            status = self.rebuild_index().get(proposal_id)
        return status

    def adopt_strays(self) -> None:
        """Rename non-conforming `*.dsl` files to `proposal_<stem>_pending.dsl`."""
        if not self._queue_dir.exists():
            return
        for path in sorted(self._queue_dir.glob(f"*{PROPOSAL_SUFFIX}")):
            if path.name.startswith("proposal_"):
                continue
            stem = path.stem
            if not _ADOPTABLE_STEM_RE.match(stem):
                logger.warning(f"Ignoring queue file with unusable name: {path.name}")
                continue
            target = self._queue_dir / proposal_filename(stem, ProposalStatus.PENDING)
            if target.exists():
                logger.warning(f"Cannot adopt {path.name}: {target.name} already exists")
                continue
            try:
                os.rename(path, target)
            except FileNotFoundError:
                continue
            except OSError as exc:
                raise QueueError(f"Failed to adopt {path.name}: {exc}") from exc
            logger.info(f"Adopted queue file {path.name} as {target.name}")

    def list_pending(self) -> List[Proposal]:
        """Pending proposals in the queue, sorted by id."""
        self.adopt_strays()
        pending: List[Proposal] = []
        for proposal_id, status, path in self.scan():
            if status is not ProposalStatus.PENDING:
                continue
            try:
                pending.append(Proposal.from_file(proposal_id, status, path))
            except FileNotFoundError:
                # Picked up and renamed by a concurrent dispatch
                continue
            except OSError as exc:
                raise IoError(f"Failed to read proposal {path.name}: {exc}") from exc
            with self._lock:
                self._index.setdefault(proposal_id, status)
        pending.sort(key=lambda p: proposal_sort_key(p.id))
        return pending

    def archived(self) -> Dict[str, Path]:
        """{id: path} for every proposal in the archive directory."""
        return {pid: path for pid, _, path in self._scan_dir(self._executed_dir)}

    def find(self, proposal_id: str) -> Optional[Path]:
        """Locate a proposal file, preferring the archive over the queue."""
        for directory in (self._executed_dir, self._queue_dir):
            for found_id, _, path in self._scan_dir(directory):
                if found_id == proposal_id:
                    return path
        return None

    # -------------------------------------------------------------------------
    # Transitions
    # -------------------------------------------------------------------------

    def _supersede(self, path: Path) -> Path:
        """Move an older terminal file out of the way of a re-submission's outcome."""
        stamp = utcnow().strftime("%Y%m%dT%H%M%S%f")
        aside = path.with_name(f"{path.name}.{stamp}")
        try:
            os.rename(path, aside)
        except OSError as exc:
            raise QueueError(f"Failed to set aside {path.name}: {exc}") from exc
        logger.info(f"Superseded {path.name} -> {aside.name}")
        return aside

    def transition(self, proposal_id: str, new_status: ProposalStatus) -> Path:
        """Rename the proposal's file so it encodes `new_status`."""
        with self._lock:
            candidates = [
                (status, path)
                for found_id, status, path in self.scan()
                if found_id == proposal_id
            ]
            if not candidates:
                raise QueueError(f"Proposal not found in queue: {proposal_id}")

            sources = [(s, p) for s, p in candidates if s.can_transition(new_status)]
            if not sources:
                current = ", ".join(sorted(s.value for s, _ in candidates))
                raise QueueError(
                    f"Illegal transition for proposal {proposal_id}: {current} -> {new_status.value}"
                )

            old_status, source = sources[0]
            target = self._queue_dir / proposal_filename(proposal_id, new_status)
            if target.exists():
                if not new_status.is_terminal:
                    raise QueueError(f"Refusing to overwrite existing proposal file: {target.name}")
                self._supersede(target)
            try:
                os.rename(source, target)
            except OSError as exc:
                raise QueueError(f"Failed to update proposal status: {exc}") from exc

            self._index[proposal_id] = new_status

        logger.info(f"Proposal {proposal_id}: {old_status.value} -> {new_status.value}")
        return target

    # -------------------------------------------------------------------------
    # Archive and audit
    # -------------------------------------------------------------------------

    def archive(self, proposal_id: str, source: Path) -> Path:
        """Copy a completed proposal into the archive directory."""
        dest = self._executed_dir / proposal_filename(proposal_id, ProposalStatus.COMPLETED)
        try:
            self._executed_dir.mkdir(parents=True, exist_ok=True)
            shutil.copy2(source, dest)
        except OSError as exc:
            raise IoError(f"Failed to archive proposal {proposal_id}: {exc}") from exc
        return dest

    def log_rejection(self, proposal_id: str, reason: str) -> None:
        line = f"{format_timestamp(utcnow())} - Rejected proposal: {proposal_id}, Reason: {reason}\n"
        try:
            self._rejected_log.parent.mkdir(parents=True, exist_ok=True)
            with open(self._rejected_log, "a", encoding="utf-8") as f:
                f.write(line)
        except OSError as exc:
            raise IoError(f"Failed to write rejection log: {exc}") from exc


# =============================================================================
# Validation policy
# =============================================================================

@dataclass(frozen=True)
class ValidationOutcome:
    ok: bool
    reason: str = ""


class ProposalValidator:
    """
    Decides whether a pending proposal may run.

    1. Structural check on the payload text.
    2. Engine dry run with `simulate=True`.
    """

    def __init__(self, engine: Engine) -> None:
        self._engine = engine

    @staticmethod
    def check_structure(content: str) -> ValidationOutcome:
        if "{" not in content or "}" not in content:
            return ValidationOutcome(False, "Proposal missing valid JSON structure")
        if "proposal" in content:
            if "title:" not in content:
                return ValidationOutcome(False, "Governance proposal missing required 'title' field")
            if "description:" not in content:
                return ValidationOutcome(
                    False, "Governance proposal missing required 'description' field"
                )
        return ValidationOutcome(True)

    def validate(self, path: Path) -> ValidationOutcome:
        logger.info(f"Validating proposal: {path.name}")
        try:
            content = path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as exc:
            return ValidationOutcome(False, f"Failed to read proposal file: {exc}")

        outcome = self.check_structure(content)
        if not outcome.ok:
            logger.warning(f"{outcome.reason}: {path.name}")
            return outcome

        try:
            accepted = self._engine.validate(path, EngineOptions.dry_run())
        except Exception as exc:
            logger.warning(f"Engine dry run raised on {path.name}: {exc}")
            return ValidationOutcome(False, f"Engine dry run failed: {exc}")
        if not accepted:
            return ValidationOutcome(False, "Engine dry run rejected proposal")
        return ValidationOutcome(True)
