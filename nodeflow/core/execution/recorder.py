"""
Execution recorder
Ordered trace of terminal NodeRun transitions with input/output digests
"""
import base64
import hashlib
import json
import time
from typing import Any, List, Optional

from ..types import LogEntry
from .errors import error_kind
from .node_run import NodeRun, NodeState


def make_serializable(value: Any, max_depth: int = 32) -> Any:
    """
    Convert a value to be JSON-serializable.
    Bytes become {"$bytes": <base64>}, other complex objects a type placeholder.

    Args:
        value: Any Python value
        max_depth: Maximum recursion depth

    Returns:
        JSON-serializable version of the value
    """
    if max_depth <= 0:
        return "<max depth reached>"

    if value is None or isinstance(value, (bool, int, float, str)):
        return value

    if isinstance(value, (bytes, bytearray)):
        return {"$bytes": base64.b64encode(bytes(value)).decode("ascii")}

    if isinstance(value, (list, tuple)):
        return [make_serializable(item, max_depth - 1) for item in value]

    if isinstance(value, (set, frozenset)):
        return sorted((make_serializable(item, max_depth - 1) for item in value), key=repr)

    if isinstance(value, dict):
        return {
            str(k): make_serializable(v, max_depth - 1)
            for k, v in value.items()
        }

    type_name = type(value).__name__
    module = type(value).__module__
    try:
        str_repr = str(value)
        if len(str_repr) < 200 and not str_repr.startswith('<'):
            return f"<{type_name}: {str_repr}>"
    except Exception:
        pass
    return f"<{module}.{type_name}>"


def canonical_json(value: Any) -> str:
    """Sorted keys, compact separators"""
    return json.dumps(make_serializable(value), sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def digest(value: Any) -> str:
    """SHA-256 hex digest of the canonical JSON form of a value"""
    return hashlib.sha256(canonical_json(value).encode("utf-8")).hexdigest()


class ExecutionRecorder:
    """
    Collects one LogEntry per terminal NodeRun transition, in transition order

    now() is a monotonic clock expressed as epoch milliseconds: wall time is
    read once at construction and perf_counter() advances it.
    """

    def __init__(self, verbose: bool = False):
        self.verbose = verbose
        self.entries: List[LogEntry] = []
        self._epoch_ms = time.time() * 1000.0
        self._anchor = time.perf_counter()

    def now(self) -> float:
        return round(self._epoch_ms + (time.perf_counter() - self._anchor) * 1000.0, 3)

    @property
    def started_at(self) -> float:
        return round(self._epoch_ms, 3)

    def record(self, run: NodeRun) -> LogEntry:
        """Append the snapshot of a run that just reached a terminal state"""
        entry: LogEntry = {
            "nodeId": run.node_id,
            "type": run.node_type,
            "state": run.state.value,
            "startedAt": run.started_at,
            "finishedAt": run.finished_at,
            "elapsedMs": run.elapsed_ms,
            "inputsDigest": digest(run.input_values),
            "iteration": list(run.iteration),
            "attempts": list(run.attempts),
            "coercions": list(run.coercions),
        }
        if run.state == NodeState.SUCCEEDED:
            entry["outputsDigest"] = digest(run.output_values)
        if run.error is not None:
            entry["error"] = str(run.error) or type(run.error).__name__
            entry["errorKind"] = error_kind(run.error)
        if run.skip_reason is not None:
            entry["skipReason"] = run.skip_reason.value
        if self.verbose:
            entry["inputs"] = make_serializable(run.input_values)
            if run.state == NodeState.SUCCEEDED:
                entry["outputs"] = make_serializable(run.output_values)

        self.entries.append(entry)
        return entry

    def first_failure(self) -> Optional[LogEntry]:
        for entry in self.entries:
            if entry["state"] == NodeState.FAILED.value:
                return entry
        return None
