"""Generator configuration.

Options may be given in a YAML or JSON file using either the camelCase names
(``validationFailureStatus``) or their snake_case attribute names.
"""

from pathlib import Path

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from api_test_synth.errors import ConfigError


class SynthConfig(BaseModel):
    """Recognized options for a generation run."""

    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="forbid")

    validation_failure_status: int = Field(400, alias="validationFailureStatus", ge=400, le=499)
    leniency_for_numeric_strings: bool = Field(False, alias="leniencyForNumericStrings")
    max_recursion_depth: int = Field(3, alias="maxRecursionDepth", ge=1)
    include_cleanup_folder: bool = Field(True, alias="includeCleanupFolder")
    base_url_variable_name: str = Field("baseUrl", alias="baseUrlVariableName", min_length=1)
    base_url: str = Field("http://localhost:8080", alias="baseUrl")
    collection_name: str = Field("Generated API Tests", alias="collectionName")
    ignored_path_prefixes: tuple[str, ...] = Field(("api", "rest"), alias="ignoredPathPrefixes")
    listing_content_field: str = Field("content", alias="listingContentField")
    listing_total_field: str = Field("totalElements", alias="listingTotalField")


def load_config(file_path: Path | None) -> SynthConfig:
    """Load a config file, or return the defaults when no path is given."""
    if file_path is None:
        return SynthConfig()

    try:
        text = file_path.read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigError(f"cannot read config file {file_path}: {e}") from e

    try:
        data = yaml.safe_load(text) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"config file {file_path} is not valid YAML/JSON: {e}") from e

    if not isinstance(data, dict):
        raise ConfigError(f"config file {file_path} must contain a mapping")

    try:
        return SynthConfig(**data)
    except ValidationError as e:
        raise ConfigError(f"invalid config in {file_path}: {e}") from e
