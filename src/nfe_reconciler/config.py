"""Application configuration models and helpers.

The configuration is persisted in a YAML file (``config.yaml`` by default)
and validated with ``pydantic`` models.  Every section has defaults matching
the behaviour of the reconciliation rules, so ``Settings()`` is a usable
configuration for tests and embedded use; the YAML file only needs to
override what differs.
"""

from __future__ import annotations

from pathlib import Path
from typing import Optional

import yaml
from pydantic import BaseModel, Field, validator


def _ratio(value: float) -> float:
    if not 0 < value <= 1:
        raise ValueError("thresholds must be in the (0, 1] interval")
    return value


class PathsConfig(BaseModel):
    """Filesystem locations used by the CLI and the API."""

    workspace_file: Path = Field(Path("data/workspace.json"), description="JSON file with customers and certificates")
    catalog_file: Optional[Path] = Field(
        default=None,
        description="Optional spreadsheet (xlsx/csv) with the product catalogue.  When omitted the"
        " catalogue stored in the workspace file is used.",
    )
    mapping_file: Path = Field(Path("data/mapeamentos.json"), description="JSON file used to persist manual mappings")
    log_folder: Path = Field(Path("logs"), description="Folder for import summaries")

    @validator("workspace_file", "catalog_file", "mapping_file", "log_folder", pre=True)
    def _expand_path(cls, value: Optional[str]) -> Optional[Path]:
        if value is None:
            return None
        return Path(value).expanduser().resolve()

    def ensure_directories(self) -> None:
        """Create the directories required by the file backed stores."""

        self.log_folder.mkdir(parents=True, exist_ok=True)
        self.workspace_file.parent.mkdir(parents=True, exist_ok=True)
        self.mapping_file.parent.mkdir(parents=True, exist_ok=True)


class ScoringWeights(BaseModel):
    """Points awarded by each factor of the product similarity score."""

    code_exact: float = 40
    code_internal: float = 35
    technical_name: float = 30
    commercial_name: float = 20
    base_name: float = 15
    unit: float = 10
    ncm: float = 5

    @validator("code_exact", "code_internal", "technical_name", "commercial_name", "base_name", "unit", "ncm")
    def _validate_positive(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("weights must be greater than zero")
        return value

    @validator("code_internal")
    def _validate_internal(cls, value: float, values: dict) -> float:
        exact = values.get("code_exact")
        if exact is not None and value > exact:
            raise ValueError("code_internal cannot exceed code_exact")
        return value

    @property
    def max_score(self) -> float:
        # code_internal shares the slot of code_exact
        return self.code_exact + self.technical_name + self.commercial_name + self.base_name + self.unit + self.ncm


class MatchingSettings(BaseModel):
    exact_threshold: float = Field(0.9, description="Top score from which a candidate is auto-accepted")
    good_threshold: float = Field(0.7, description="Best score above which a result counts as a good match")
    create_threshold: float = Field(0.5, description="Top score below which catalogue creation is suggested")
    min_similarity: float = Field(0.1, description="Candidates at or below this score are discarded")
    max_candidates: int = Field(10, description="Number of ranked candidates kept per line item")
    weights: ScoringWeights = Field(default_factory=ScoringWeights)

    @validator("exact_threshold", "good_threshold", "create_threshold", "min_similarity")
    def _validate_ratios(cls, value: float) -> float:
        return _ratio(value)

    @validator("max_candidates")
    def _validate_candidates(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("max_candidates must be greater than zero")
        return value


class ClientSettings(BaseModel):
    name_similarity_threshold: float = Field(0.6, description="Name similarity above which a customer is a conflict")
    tax_root_length: int = Field(8, description="Digits of the CNPJ that identify the company root")
    tax_root_similarity: float = Field(0.8, description="Similarity assigned to CNPJ root matches")
    max_conflicts: int = Field(5, description="Maximum number of conflicting customers reported")
    home_country: str = Field("Brasil", description="Country of every customer created from an NF-e")
    internal_code_prefix: str = Field("CLI", description="Prefix of generated customer internal codes")

    @validator("name_similarity_threshold", "tax_root_similarity")
    def _validate_ratios(cls, value: float) -> float:
        return _ratio(value)

    @validator("tax_root_length", "max_conflicts")
    def _validate_positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("value must be greater than zero")
        return value

    @validator("home_country", "internal_code_prefix")
    def _validate_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("value must not be blank")
        return value.strip()


class Settings(BaseModel):
    """Top level configuration object."""

    paths: PathsConfig = Field(default_factory=PathsConfig)
    matching: MatchingSettings = Field(default_factory=MatchingSettings)
    clients: ClientSettings = Field(default_factory=ClientSettings)
    tenant_id: int = Field(1, description="Tenant used by the CLI when none is given")
    remember_mappings: bool = Field(True, description="Persist the variant chosen for each invoice code on commit")

    class Config:
        arbitrary_types_allowed = True

    def ensure_folders(self) -> None:
        self.paths.ensure_directories()

    @classmethod
    def load(cls, path: Path | str = Path("config.yaml")) -> "Settings":
        """Load the configuration from a YAML file."""

        config_path = Path(path).expanduser().resolve()
        if not config_path.exists():
            raise FileNotFoundError(f"Configuration file not found: {config_path}")

        with config_path.open("r", encoding="utf-8") as stream:
            data = yaml.safe_load(stream) or {}

        settings = cls.parse_obj(data)
        settings.ensure_folders()
        return settings


__all__ = [
    "Settings",
    "PathsConfig",
    "ScoringWeights",
    "MatchingSettings",
    "ClientSettings",
]
