class RunRelayError(Exception):
    """Base exception for the run orchestration engine."""


class ConfigurationError(RunRelayError):
    pass


class CyclicDependencyError(RunRelayError):
    """Raised when the node dependency graph contains a cycle."""


class ResolutionError(RunRelayError):
    def __init__(self, trigger_name: str, detail: str):
        self.trigger_name = trigger_name
        super().__init__(f"Cannot resolve trigger '{trigger_name}': {detail}")


class NotFoundError(RunRelayError):
    def __init__(self, unit_id: int | str, run_id: int | str, pattern: str):
        self.unit_id = unit_id
        self.run_id = run_id
        self.pattern = pattern
        super().__init__(
            f"No artifacts job matched '{pattern}' in project={unit_id} pipeline={run_id}"
        )


class CollisionError(RunRelayError):
    def __init__(self, slot: str):
        self.slot = slot
        super().__init__(f"Namespaced slot already exists: {slot}")


class ArtifactValidationError(RunRelayError):
    def __init__(self, node: str, problems: list[str]):
        self.node = node
        self.problems = problems
        super().__init__(f"Artifacts of node '{node}' are invalid: {'; '.join(problems)}")


class TransportError(RunRelayError):
    def __init__(self, method: str, url: str, attempts: int, detail: str = ""):
        self.method = method
        self.url = url
        self.attempts = attempts
        message = f"{method} {url} failed after {attempts} attempts"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)


class NodeTimeoutError(RunRelayError):
    def __init__(self, node: str, timeout: float):
        self.node = node
        self.timeout = timeout
        super().__init__(f"Node '{node}' did not complete within {timeout}s")


class PublishError(RunRelayError):
    def __init__(self, package: str, version: str, detail: str):
        self.package = package
        self.version = version
        super().__init__(f"Failed to publish {package}/{version}: {detail}")


class RunAbortedError(RunRelayError):
    """The run ended without publishing anything.

    ``result`` carries whatever was known when the run was aborted and
    ``cause`` the error that stopped it.
    """

    def __init__(self, run_id: str, detail: str, result=None, cause: Exception | None = None):
        self.run_id = run_id
        self.result = result
        self.cause = cause
        super().__init__(f"Run {run_id} aborted: {detail}")
