"""Declaration set loading with validation.

A declaration set is a Terraform module directory plus the variable files
and inline variables used to plan and apply it. It can be given either as
the module directory itself or as a YAML descriptor file.

SECURITY: Descriptor files are size-limited before they are read, and all
validation happens here at the boundary.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator

from .config import MAX_DECLARATIONS_FILE_SIZE_BYTES
from .models import InputError

logger = logging.getLogger(__name__)


class DeclarationLoadError(InputError):
    """Raised when a declaration set cannot be loaded or fails validation."""

    pass


class Declarations(BaseModel):
    """Desired-state input for plan, apply and import."""

    model_config = {"extra": "ignore", "populate_by_name": True, "frozen": True}

    working_dir: Path = Field(alias="workingDir")
    var_files: list[Path] = Field(default_factory=list, alias="varFiles")
    variables: dict[str, str] = Field(default_factory=dict)
    import_var_files: list[Path] | None = Field(None, alias="importVarFiles")

    @field_validator("variables", mode="before")
    @classmethod
    def stringify_variables(cls, v: Any) -> Any:
        if not isinstance(v, dict):
            return v
        # Terraform -var values are strings; YAML may hand us ints and bools
        return {
            str(key): str(value).lower() if isinstance(value, bool) else str(value)
            for key, value in v.items()
        }

    @field_validator("variables")
    @classmethod
    def validate_variable_names(cls, v: dict[str, str]) -> dict[str, str]:
        for key in v:
            if not key or "=" in key:
                raise ValueError(f"invalid variable name '{key}'")
        return v

    @property
    def effective_import_var_files(self) -> list[Path]:
        if self.import_var_files is None:
            return list(self.var_files)
        return list(self.import_var_files)

    def var_arguments(self, *, for_import: bool = False) -> list[str]:
        """Terraform command-line arguments for variable files and values."""
        files = self.effective_import_var_files if for_import else self.var_files
        args = [f"-var-file={path.resolve()}" for path in files]
        args.extend(f"-var={key}={value}" for key, value in sorted(self.variables.items()))
        return args


def load_declarations(source: Path) -> Declarations:
    """Load a declaration set from a module directory or a YAML descriptor.

    Relative paths inside a descriptor are resolved against the descriptor's
    own directory.

    Raises:
        DeclarationLoadError: If the source is missing or invalid.
    """
    if source.is_dir():
        return _from_directory(source)

    if not source.exists():
        raise DeclarationLoadError(f"Declarations not found: {source}")

    return _from_descriptor(source)


def _from_directory(directory: Path) -> Declarations:
    if not any(directory.glob("*.tf")) and not any(directory.glob("*.tf.json")):
        raise DeclarationLoadError(f"No Terraform configuration files in {directory}")

    # terraform.tfvars and *.auto.tfvars are loaded by Terraform itself
    logger.info(
        "Loaded declarations from module directory",
        extra={"working_dir": str(directory)},
    )
    return Declarations(working_dir=directory)


def _from_descriptor(path: Path) -> Declarations:
    # SECURITY: Check file size before reading to prevent DoS
    try:
        file_size = path.stat().st_size
    except OSError as e:
        raise DeclarationLoadError(f"Failed to stat declarations file {path}: {e}") from e

    if file_size > MAX_DECLARATIONS_FILE_SIZE_BYTES:
        raise DeclarationLoadError(
            f"Declarations file exceeds maximum size of "
            f"{MAX_DECLARATIONS_FILE_SIZE_BYTES} bytes: {path}"
        )

    try:
        content = path.read_text(encoding="utf-8")
    except OSError as e:
        raise DeclarationLoadError(f"Failed to read declarations file {path}: {e}") from e

    try:
        raw_data = yaml.safe_load(content)
    except yaml.YAMLError as e:
        raise DeclarationLoadError(f"Invalid YAML in {path}: {e}") from e

    if not isinstance(raw_data, dict):
        raise DeclarationLoadError(f"Declarations file must contain a YAML mapping: {path}")

    # Support both flat format and Kubernetes-style wrapper
    if "apiVersion" in raw_data and "spec" in raw_data:
        data = raw_data.get("spec", {})
        if not isinstance(data, dict):
            raise DeclarationLoadError(f"Spec section must be a mapping: {path}")
    else:
        data = raw_data

    try:
        declarations = Declarations.model_validate(data)
    except ValidationError as e:
        errors = []
        for error in e.errors():
            loc = ".".join(str(x) for x in error["loc"])
            errors.append(f"  - {loc}: {error['msg']}")
        error_list = "\n".join(errors)
        raise DeclarationLoadError(f"Validation failed for {path}:\n{error_list}") from e

    declarations = _resolve_relative_to(declarations, path.parent)

    if not declarations.working_dir.is_dir():
        raise DeclarationLoadError(
            f"Working directory does not exist: {declarations.working_dir}"
        )
    missing = [
        str(p)
        for p in [*declarations.var_files, *declarations.effective_import_var_files]
        if not p.is_file()
    ]
    if missing:
        raise DeclarationLoadError(f"Variable files not found: {', '.join(sorted(set(missing)))}")

    logger.info(
        "Loaded declarations from descriptor",
        extra={"descriptor": str(path), "working_dir": str(declarations.working_dir)},
    )
    return declarations


def _resolve_relative_to(declarations: Declarations, base: Path) -> Declarations:
    def resolve(p: Path) -> Path:
        return p if p.is_absolute() else base / p

    import_var_files = declarations.import_var_files
    return declarations.model_copy(
        update={
            "working_dir": resolve(declarations.working_dir),
            "var_files": [resolve(p) for p in declarations.var_files],
            "import_var_files": (
                None if import_var_files is None else [resolve(p) for p in import_var_files]
            ),
        }
    )
