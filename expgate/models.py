"""
Pydantic models for the experiment manifest.
"""
from typing import Any, List, Optional, Tuple
from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from expgate.errors import ManifestParseError


class ExperimentDescriptor(BaseModel):
    """One named variant: a salt and a percentage bucket range [min, max)"""
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    name: str = Field(..., min_length=1, description="Experiment or control arm name")
    salt: str = Field(..., description="Hash salt shared by paired arms")
    min: float = Field(..., ge=0, le=100, description="Inclusive lower bucket bound")
    max: float = Field(..., ge=0, le=100, description="Exclusive upper bucket bound")

    @model_validator(mode="after")
    def check_range(self) -> "ExperimentDescriptor":
        # 0/0 marks an experiment that is defined but not rolled out
        if self.min >= self.max and not (self.min == 0 and self.max == 0):
            raise ValueError(f"min ({self.min}) must be lower than max ({self.max})")
        return self

    def to_dict(self) -> dict:
        return self.model_dump()


Manifest = List[ExperimentDescriptor]


class ParsedManifest(BaseModel):
    """Result of validating a raw manifest payload"""
    descriptors: List[ExperimentDescriptor] = Field(default_factory=list)
    dropped: List[Tuple[int, str]] = Field(default_factory=list)


def parse_manifest(payload: Any) -> ParsedManifest:
    """
    Validate a decoded JSON payload into descriptors.

    Malformed entries are dropped individually; only a payload that is not
    a list at all is rejected.

    Raises:
        ManifestParseError: payload is not a JSON array
    """
    if not isinstance(payload, list):
        raise ManifestParseError(f"Manifest must be a JSON array, got {type(payload).__name__}")

    parsed = ParsedManifest()
    for index, entry in enumerate(payload):
        if not isinstance(entry, dict):
            parsed.dropped.append((index, "entry is not an object"))
            continue
        try:
            parsed.descriptors.append(ExperimentDescriptor.model_validate(_strict_entry(entry)))
        except (ValidationError, ValueError, TypeError) as e:
            parsed.dropped.append((index, _first_error(e)))
    return parsed


def _strict_entry(entry: dict) -> dict:
    """Reject booleans and numeric strings that pydantic would coerce"""
    for key in ("name", "salt"):
        if key in entry and not isinstance(entry[key], str):
            raise TypeError(f"{key} must be a string")
    for key in ("min", "max"):
        value = entry.get(key)
        if key in entry and (isinstance(value, bool) or not isinstance(value, (int, float))):
            raise TypeError(f"{key} must be a number")
    return entry


def _first_error(exc: Exception) -> str:
    if isinstance(exc, ValidationError):
        errors = exc.errors()
        if errors:
            location = ".".join(str(part) for part in errors[0].get("loc", ()))
            message = errors[0].get("msg", str(exc))
            return f"{location}: {message}" if location else message
    return str(exc)


class ExperimentsStatusResponse(BaseModel):
    """Diagnostic view of the manager state"""
    state: str
    source: Optional[str] = None
    installation_id: str
    user_experiments: List[ExperimentDescriptor] = Field(default_factory=list)


class MembershipResponse(BaseModel):
    """Membership answer for one experiment or control arm"""
    name: str
    in_experiment: bool


class HealthResponse(BaseModel):
    """Health check response"""
    status: str
    service: str
    version: str
    experiments: str
    uptime_seconds: Optional[int] = None
