"""Volume permission init step ordering and workload start state machine."""

import re
import shlex
from enum import Enum
from typing import Callable, Iterable, List, Tuple

from imagereleaser.errors import InitStepFailure, ReleaseError
from imagereleaser.errors_catalog import actionable_error
from imagereleaser.models import InitStep, MainStep, VolumeBinding, VolumeSource

_MODE_RE = re.compile(r"^[0-7]{3,4}$")
_OWNER_RE = re.compile(r"^[A-Za-z0-9_.-]+(:[A-Za-z0-9_.-]+)?$")


class StartState(str, Enum):
    PENDING = "pending"
    INIT_RUNNING = "init_running"
    INIT_SUCCEEDED = "init_succeeded"
    INIT_FAILED = "init_failed"
    HALTED = "halted"
    MAIN_RUNNING = "main_running"
    READY = "ready"
    MAIN_FAILED = "main_failed"


TRANSITIONS = {
    StartState.PENDING: {StartState.INIT_RUNNING},
    StartState.INIT_RUNNING: {StartState.INIT_SUCCEEDED, StartState.INIT_FAILED},
    StartState.INIT_SUCCEEDED: {StartState.MAIN_RUNNING},
    StartState.INIT_FAILED: {StartState.HALTED},
    StartState.MAIN_RUNNING: {StartState.READY, StartState.MAIN_FAILED},
    StartState.HALTED: set(),
    StartState.READY: set(),
    StartState.MAIN_FAILED: set(),
}
TERMINAL_STATES = {StartState.HALTED, StartState.READY, StartState.MAIN_FAILED}


class VolumeLifecycleSequencer:
    """Puts exactly one permission-fixing init step in front of the main step."""

    def __init__(self, image: str = "alpine:3", owner: str = "root:root", mode: str = "700"):
        if not _OWNER_RE.match(owner):
            raise ReleaseError(f"Invalid volume owner `{owner}`. Use `user` or `user:group`.")
        if not _MODE_RE.match(mode):
            raise ReleaseError(f"Invalid volume mode `{mode}`. Use an octal mode such as 700.")
        self.image = image
        self.owner = owner
        self.mode = mode

    def init_step_for(self, volume: VolumeBinding) -> InitStep:
        if volume.source != VolumeSource.PERSISTENT:
            raise ReleaseError(
                f"Volume `{volume.name}` is not persistent. Only persistent volumes get an init step."
            )
        path = shlex.quote(volume.mount_path)
        script = f"chown -R {self.owner} {path} && chmod {self.mode} {path}"
        return InitStep(
            name=f"init-{volume.name}",
            image=self.image,
            command=("sh", "-c", script),
            volume=volume,
        )

    def sequence(self, volume: VolumeBinding, main_step: MainStep) -> Tuple[InitStep, MainStep]:
        return self.init_step_for(volume), main_step

    def sequence_all(self, volumes: Iterable[VolumeBinding], main_step: MainStep) -> Tuple[object, ...]:
        """One init step per persistent volume, in binding order, then the main step."""
        steps: List[object] = [
            self.init_step_for(volume) for volume in volumes if volume.source == VolumeSource.PERSISTENT
        ]
        steps.append(main_step)
        return tuple(steps)


class WorkloadStart:
    """A single start attempt of the workload.

    The main step only starts after every init step has exited successfully.
    Terminal starts do not loop; the external restart policy calls ``reset()``.
    """

    def __init__(self, init_sequence: Tuple[object, ...], executor: Callable, logger):
        if not init_sequence or not isinstance(init_sequence[-1], MainStep):
            raise ReleaseError("Init sequence must end with the main step.")
        self.init_steps: List[InitStep] = list(init_sequence[:-1])
        self.main_step: MainStep = init_sequence[-1]
        self.executor = executor
        self.logger = logger
        self.state = StartState.PENDING
        self.history: List[StartState] = [self.state]

    def _transition(self, new_state: StartState):
        if new_state not in TRANSITIONS[self.state]:
            raise ReleaseError(f"Illegal workload transition {self.state.value} -> {new_state.value}")
        self.logger.debug("Workload %s: %s -> %s", self.main_step.name, self.state.value, new_state.value)
        self.state = new_state
        self.history.append(new_state)

    def reset(self):
        if self.state not in TERMINAL_STATES:
            raise ReleaseError(f"Cannot restart a workload that is still {self.state.value}.")
        self.state = StartState.PENDING
        self.history.append(self.state)

    def run(self) -> StartState:
        self._transition(StartState.INIT_RUNNING)
        for step in self.init_steps:
            try:
                status = self.executor(step)
            except (ReleaseError, OSError) as exc:
                self.logger.error("Init step %s could not run: %s", step.name, exc)
                self._halt()
                raise InitStepFailure(
                    actionable_error("init_step_failed", step=step.name, status="<not started>")
                ) from exc
            if status != 0:
                self._halt()
                raise InitStepFailure(actionable_error("init_step_failed", step=step.name, status=str(status)))
        self._transition(StartState.INIT_SUCCEEDED)

        self._transition(StartState.MAIN_RUNNING)
        try:
            status = self.executor(self.main_step)
        except (ReleaseError, OSError) as exc:
            self.logger.error("Main step %s could not run: %s", self.main_step.name, exc)
            status = None
        self._transition(StartState.READY if status == 0 else StartState.MAIN_FAILED)
        return self.state

    def _halt(self):
        self._transition(StartState.INIT_FAILED)
        self._transition(StartState.HALTED)

