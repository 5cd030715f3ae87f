"""CLIConfig: Command-line operational overrides.

Minimal configuration for operational parameters that commonly change
between runs: inputs, output path, threads, device and verbosity.
"""

from typing import Literal, Optional

from pydantic import Field, field_validator

from astromesh.schemas.base import AstromeshBaseModel


class CLIConfig(AstromeshBaseModel):
    """Command-line configuration overrides.

    Highest priority in config resolution.

    Usage
    -----
        cli_cfg = CLIConfig(base_dir="/scratch/astromesh", num_threads=8)
        internal = resolve_config(param_cfg, user_cfg, cli_cfg)
    """

    base_dir: Optional[str] = None
    input_dir: Optional[str] = None
    input_files: Optional[list[str]] = None
    num_threads: Optional[int] = Field(None, ge=0)
    backend: Optional[Literal["cpu", "auto", "gpu"]] = None
    no_plots: Optional[bool] = None
    log_level: Optional[Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]] = None

    @field_validator("input_files", mode="before")
    @classmethod
    def single_file_to_list(cls, v):
        if isinstance(v, str):
            return [v]
        return v

    def to_internal_overrides(self) -> dict:
        """Convert CLI config to internal config structure.

        Returns
        -------
        dict
            Nested dictionary matching InternalConfig structure
        """
        overrides = {}

        if self.base_dir is not None:
            overrides["base_dir"] = str(self.base_dir)

        input_overrides = {}
        if self.input_dir is not None:
            input_overrides["input_dir"] = str(self.input_dir)
        if self.input_files:
            input_overrides["files"] = [str(f) for f in self.input_files]
        if input_overrides:
            overrides["input"] = input_overrides

        if self.num_threads is not None:
            overrides["threads"] = {"num_threads": self.num_threads}
        if self.backend is not None:
            overrides["convolve"] = {"backend": self.backend}
        if self.no_plots:
            overrides["visualization"] = {"enabled": False}
        if self.log_level is not None:
            overrides["logging"] = {"level": self.log_level}

        return overrides
