"""Error taxonomy for paneforge."""


class PaneforgeError(Exception):
    """Base class for all paneforge errors."""


class DescriptionError(PaneforgeError):
    """The layout description file could not be read or validated."""


class LayoutError(PaneforgeError, ValueError):
    """A build-time semantic error. Session construction aborts."""


class LayoutOverconstrained(LayoutError):
    """Fixed and percentage sizes exceed the available extent."""

    def __init__(self, available: int, requested: int) -> None:
        self.available = available
        self.requested = requested
        super().__init__(f"Sizes request {requested} cells but only {available} are available")


class MultipleInsertionPoints(LayoutError):
    """A tab template contains more than one children marker."""

    def __init__(self, count: int) -> None:
        self.count = count
        super().__init__(f"Tab template has {count} insertion points, expected at most one")


class DuplicatePaneName(LayoutError):
    """Two panes in one session share a name."""

    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f"Duplicate pane name: {name!r}")


class UnknownPaneName(PaneforgeError, KeyError):
    """No pane with the given name is registered."""

    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(name)

    def __str__(self) -> str:
        return f"Unknown pane name: {self.name!r}"


class PipelineError(PaneforgeError):
    """A setup pipeline halted. Recorded on the pipeline, never raised through the loop."""


class PipelineStepFailed(PipelineError):
    """A step exited non-zero while stop_on_failure was set."""

    def __init__(self, step_index: int, exit_code: int, command: str = "") -> None:
        self.step_index = step_index
        self.exit_code = exit_code
        self.command = command
        super().__init__(f"Step {step_index} failed with exit code {exit_code}: {command}")


class PipelineCancelled(PipelineError):
    """The hosting pane went away while a step was running."""

    def __init__(self, step_index: int) -> None:
        self.step_index = step_index
        super().__init__(f"Pipeline cancelled at step {step_index}")
