"""Gate -- pure accept/reject policy over the canonical tree.

Runs the run's predicates against the tree and the sealed manifest and
produces a :class:`GateVerdict`.  The gate only reads: it never writes to
the tree or the bundle, and the same inputs always yield the same verdict.

Predicates:

1. **nodes_succeeded** -- the listed nodes (all when empty) report ``success``.
2. **file_contains** -- a slot file contains a token.
3. **json_field** -- a dotted key of a slot JSON file compares true against
   a value (``eq ne gt ge lt le``).  Used for exit codes and metrics.
"""

from __future__ import annotations

import json
import operator
import tempfile
import zipfile
from pathlib import Path, PurePosixPath
from typing import Any, Callable

from runrelay.core.run.manifest import MANIFEST_NAME, Manifest
from runrelay.core.run.models import (
    FileContains,
    GateCheck,
    GatePredicate,
    GateVerdict,
    JsonField,
    NodesSucceeded,
    NodeStatus,
)
from runrelay.utils.file_utils import is_within
from runrelay.utils.logging import get_logger

logger = get_logger("engine.gate")

_OPERATORS: dict[str, Callable[[Any, Any], bool]] = {
    "eq": operator.eq,
    "ne": operator.ne,
    "gt": operator.gt,
    "ge": operator.ge,
    "lt": operator.lt,
    "le": operator.le,
}

_MISSING = object()


class Gate:
    """Stateless evaluator of a fixed predicate list."""

    def __init__(self, predicates: list[GatePredicate] | tuple[GatePredicate, ...]) -> None:
        self.predicates = tuple(predicates)

    def _get_checkers(self) -> dict[type, Callable[..., GateCheck]]:
        return {
            NodesSucceeded: self._check_nodes,
            FileContains: self._check_file_contains,
            JsonField: self._check_json_field,
        }

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def evaluate(self, tree_root: str | Path, manifest: Manifest) -> GateVerdict:
        """Run every predicate and return the verdict.

        A run with no predicates is rejected: acceptance must be earned.
        """
        tree_root = Path(tree_root)
        checkers = self._get_checkers()
        checks = [checkers[type(p)](p, tree_root, manifest) for p in self.predicates]

        if not checks:
            verdict = GateVerdict(passed=False, checks=[], justification="no gate predicates configured")
        else:
            failed = [c for c in checks if not c.passed]
            passed = not failed
            if passed:
                justification = f"all {len(checks)} predicate(s) passed"
            else:
                justification = "failed: " + "; ".join(f"{c.name} ({c.detail})" for c in failed)
            verdict = GateVerdict(passed=passed, checks=checks, justification=justification)

        logger.info(
            "gate_evaluated",
            passed=verdict.passed,
            total_checks=len(checks),
            failed_checks=[c.name for c in checks if not c.passed],
        )
        return verdict

    # ------------------------------------------------------------------
    # Checks
    # ------------------------------------------------------------------

    @staticmethod
    def _check_nodes(predicate: NodesSucceeded, tree_root: Path, manifest: Manifest) -> GateCheck:
        names = list(predicate.nodes) or sorted(manifest.nodes)
        name = "nodes_succeeded"
        if not names:
            return GateCheck(name=name, passed=False, detail="manifest lists no nodes")

        bad = []
        for node in names:
            entry = manifest.nodes.get(node)
            status = entry.status if entry else "missing"
            if status != NodeStatus.SUCCESS.value:
                bad.append(f"{node}={status}")
        if bad:
            return GateCheck(name=name, passed=False, detail=", ".join(bad))
        return GateCheck(name=name, passed=True, detail=f"{len(names)} node(s) succeeded")

    @staticmethod
    def _check_file_contains(predicate: FileContains, tree_root: Path, manifest: Manifest) -> GateCheck:
        name = f"file_contains:{predicate.slot}/{predicate.path}"
        path = _slot_file(tree_root, predicate.slot, predicate.path)
        if path is None:
            return GateCheck(name=name, passed=False, detail="file not found")

        text = path.read_bytes().decode("utf-8", errors="replace")
        if predicate.token in text:
            return GateCheck(name=name, passed=True, detail=f"found {predicate.token!r}")
        return GateCheck(name=name, passed=False, detail=f"{predicate.token!r} not found")

    @staticmethod
    def _check_json_field(predicate: JsonField, tree_root: Path, manifest: Manifest) -> GateCheck:
        name = f"json_field:{predicate.slot}/{predicate.path}:{predicate.key}"
        path = _slot_file(tree_root, predicate.slot, predicate.path)
        if path is None:
            return GateCheck(name=name, passed=False, detail="file not found")

        try:
            document = json.loads(path.read_text(encoding="utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            return GateCheck(name=name, passed=False, detail=f"invalid JSON: {exc}")

        actual = _lookup(document, predicate.key)
        if actual is _MISSING:
            return GateCheck(name=name, passed=False, detail="key not found")

        try:
            ok = bool(_OPERATORS[predicate.op](actual, predicate.value))
        except TypeError:
            ok = False
        return GateCheck(
            name=name,
            passed=ok,
            detail=f"{actual!r} {predicate.op} {predicate.value!r}",
        )


def _slot_file(tree_root: Path, slot: str, relative: str) -> Path | None:
    slot_dir = tree_root / slot
    path = slot_dir / relative
    if not is_within(slot_dir, path) or not path.is_file():
        return None
    return path


def _lookup(document: Any, dotted_key: str) -> Any:
    current = document
    for part in dotted_key.split("."):
        if isinstance(current, dict) and part in current:
            current = current[part]
        elif isinstance(current, list) and part.isdigit() and int(part) < len(current):
            current = current[int(part)]
        else:
            return _MISSING
    return current


def evaluate_bundle(
    bundle_path: str | Path,
    predicates: list[GatePredicate] | tuple[GatePredicate, ...],
) -> GateVerdict:
    """Re-run the gate over a bundle archive, e.g. one fetched from the bus."""
    with tempfile.TemporaryDirectory(prefix="gate-") as tmp:
        tree_root = Path(tmp)
        with zipfile.ZipFile(bundle_path) as zf:
            for member in zf.namelist():
                member_path = PurePosixPath(member)
                if member_path.is_absolute() or ".." in member_path.parts:
                    raise ValueError(f"bundle member escapes its root: {member}")
            zf.extractall(tree_root)
        manifest = Manifest.model_validate_json((tree_root / MANIFEST_NAME).read_text(encoding="utf-8"))
        return Gate(predicates).evaluate(tree_root, manifest)
