"""Fatal error types raised by the analysis pipeline."""


class DistancingPipelineError(Exception):
    """Base class for every pipeline failure."""


class MissingCategoryError(DistancingPipelineError):
    """A policy category has no entry in its score table."""

    def __init__(self, state: str, field: str, value: object) -> None:
        self.state = state
        self.field = field
        self.value = value
        super().__init__(f"{state}: unrecognized {field} category {value!r}")


class JoinMismatchError(DistancingPipelineError):
    """Clustered states are missing from one or more outcome tables."""

    def __init__(self, missing: dict[str, list[str]]) -> None:
        self.missing = missing
        detail = "; ".join(f"{source}: {', '.join(names)}" for source, names in missing.items())
        super().__init__(f"States missing from outcome data ({detail})")


class DegenerateClusterError(DistancingPipelineError):
    """Clustering produced an empty, duplicated, or untestable group."""


class InvalidPopulationError(DistancingPipelineError):
    """A population figure is missing, zero, or negative."""

    def __init__(self, state: str, population: object) -> None:
        self.state = state
        self.population = population
        super().__init__(f"{state}: population must be positive, got {population!r}")


class SourceFetchError(DistancingPipelineError):
    """A remote data source could not be downloaded."""

    def __init__(
        self,
        url: str,
        error_type: str | None,
        status_code: int | None = None,
        message: str = "",
    ) -> None:
        self.url = url
        self.error_type = error_type
        self.status_code = status_code
        self.message = message
        status = f" (HTTP {status_code})" if status_code is not None else ""
        super().__init__(f"Failed to fetch {url}{status}: {error_type}: {message}")
