"""States of a deployment and the record of a run."""

from collections.abc import Generator
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import StrEnum
import logging
import time

from validator_lab.exceptions import ClientLaunchError, ValidatorLabException
from validator_lab.manifest import Endpoints

_LOGGER = logging.getLogger(__name__)


class State(StrEnum):
    """A stage of the deployment, entered once its work has completed."""

    INIT = "init"
    SOURCES_PREPARED = "sources-prepared"
    GENESIS_READY = "genesis-ready"
    IMAGES_READY = "images-ready"
    BOOTSTRAP_DEPLOYED = "bootstrap-deployed"
    BOOTSTRAP_SKIPPED = "bootstrap-skipped"
    ENDPOINTS_RESOLVED = "endpoints-resolved"
    DEPENDENT_GROUPS_DEPLOYED = "dependent-groups-deployed"
    CONVERGENCE_WAITED = "convergence-waited"
    CLIENTS_LAUNCHED = "clients-launched"
    DONE = "done"
    ABORTED = "aborted"


@dataclass
class RunResult:
    """Outcome of one invocation of the sequencer."""

    state: State
    """Final state, either DONE or ABORTED."""

    trace: list[State] = field(default_factory=list)
    """Every state entered, in order."""

    error: ValidatorLabException | None = None
    """The reason the run was aborted."""

    endpoints: Endpoints | None = None
    """Endpoints non-bootstrap nodes were pointed at."""

    deployed: list[str] = field(default_factory=list)
    """Names of the members brought up or reconciled by this run."""

    client_errors: list[ClientLaunchError] = field(default_factory=list)
    """Clients that could not be scheduled."""

    @property
    def ok(self) -> bool:
        return self.state == State.DONE


class Trace:
    """Records state transitions of a run."""

    def __init__(self) -> None:
        self.states: list[State] = [State.INIT]

    @property
    def current(self) -> State:
        return self.states[-1]

    def enter(self, state: State) -> None:
        _LOGGER.info("Entered state %s", state)
        self.states.append(state)

    @contextmanager
    def stage_context(self, state: State) -> Generator[None, None, None]:
        """Run the work of a stage and enter `state` once it completes."""
        _LOGGER.debug("> %s", state)
        start = time.monotonic()
        yield
        _LOGGER.debug("< %s (%0.2fs)", state, time.monotonic() - start)
        self.enter(state)
