"""Deployment sequencer for validator-lab.

The sequencer drives one invocation through a fixed series of stages. A stage
starts only after the previous one met its gating condition; calls within a
stage may run concurrently. Any fatal error moves the run to `ABORTED` and
leaves already applied resources in place, so rerunning the same invocation
is the recovery path.
"""

from .sequencer import Sequencer, SequencerConfig
from .state import RunResult, State

__all__ = [
    "Sequencer",
    "SequencerConfig",
    "RunResult",
    "State",
]
