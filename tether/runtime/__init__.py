"""Agent runtime -- loop controller and its concurrency machinery.

Public API:
    AgentLoop            - Iteration state machine (model -> tools -> verification)
    AgentControl         - Kill switch: stop_session / stop_all / is_stopped
    SessionRegistry      - Per-session cancellation token + config snapshot
    ProgressBroadcaster  - Throttled, non-blocking progress feed
    ToolExecutionEngine  - Parallel/sequential tool dispatch with retry
    VerificationGate     - Completion judgment
"""

from tether.runtime.approvals import ApprovalManager
from tether.runtime.broadcaster import ProgressBroadcaster
from tether.runtime.control import AgentControl
from tether.runtime.loop import AgentLoop
from tether.runtime.processes import ProcessTracker
from tether.runtime.sessions import CancelToken, SessionRegistry, StopRequested
from tether.runtime.tool_execution import ToolExecutionEngine
from tether.runtime.verification import VerificationGate, classify_candidate

__all__ = [
    "AgentControl",
    "AgentLoop",
    "ApprovalManager",
    "CancelToken",
    "ProcessTracker",
    "ProgressBroadcaster",
    "SessionRegistry",
    "StopRequested",
    "ToolExecutionEngine",
    "VerificationGate",
    "classify_candidate",
]
