"""Complete runtime initialization for the astromesh pipeline.

This module handles ALL initialization responsibilities:
- Configuration resolution (CLI > User > Param)
- Output directory setup
- Cleanup handling (--rerun)
- Configuration persistence with run ID
- Returns fully ready InternalConfig for the orchestrator
"""

import importlib.util
import json
import logging
import shutil
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict

from astromesh.errors import MisconfigurationError
from astromesh.schemas.cli import CLIConfig
from astromesh.schemas.internal import InternalConfig
from astromesh.schemas.param import ParamConfig
from astromesh.schemas.resolve import resolve_config
from astromesh.schemas.user import UserConfig

logger = logging.getLogger(__name__)


def _load_user_config_dict(config_path: str) -> dict:
    """Load user config dict from a Python file."""
    path = Path(config_path)
    if not path.exists():
        raise FileNotFoundError(f"Config not found: {path}")

    spec = importlib.util.spec_from_file_location("astromesh_user_config", path)
    if spec is None or spec.loader is None:
        raise ImportError(f"Could not load config module from {path}")

    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)

    # Find CONFIG dict
    for name in dir(module):
        if name.startswith('CONFIG'):
            obj = getattr(module, name)
            if isinstance(obj, dict):
                return obj

    raise MisconfigurationError(f"No CONFIG dict found in {path}")


def _setup_output_directories(base_dir: str) -> Dict[str, Path]:
    from astromesh.setup_directories import setup_output_directories
    return setup_output_directories(base_dir)


def _handle_rerun_cleanup(base_dir: str, rerun: bool) -> None:
    """Handle --rerun directory cleanup if requested."""
    if not rerun:
        return

    base_dir_path = Path(base_dir)
    if base_dir_path.exists():
        logger.info("Cleaning output directory: %s", base_dir_path)
        shutil.rmtree(base_dir_path)


def generate_run_id() -> str:
    """Timestamped, unique run identifier."""
    stamp = datetime.now(timezone.utc).strftime("%Y%m%d_%H%M%S")
    return f"{stamp}_{uuid.uuid4().hex[:8]}"


def _persist_runtime_config(config: InternalConfig, output_dirs: Dict[str, Path]) -> Path:
    """Save the resolved configuration next to the outputs for reproducibility."""
    config_output_dir = Path(output_dirs["base"])
    config_output_dir.mkdir(parents=True, exist_ok=True)
    config_file = config_output_dir / f"runtime_config_{config.run_id}.json"

    config_dict = config.model_dump()
    config_dict["created_at"] = datetime.now(timezone.utc).isoformat()

    with open(config_file, 'w') as f:
        json.dump(config_dict, f, indent=2, default=str)

    logger.info("Runtime config saved: %s", config_file)
    return config_file


def init_runtime_config(args) -> InternalConfig:
    """Complete runtime initialization - single entry point for scripts.

    Parameters
    ----------
    args : argparse.Namespace
        Command line arguments with config path and all overrides

    Returns
    -------
    InternalConfig
        Validated configuration with output directories created, run ID set
        and a copy persisted under the base directory.

    Examples
    --------
    >>> args = parser.parse_args()
    >>> config = init_runtime_config(args)
    >>> orchestrator = PipelineOrchestrator(config)
    """
    config_path = getattr(args, 'config', None)
    if not config_path:
        raise MisconfigurationError("Config path required in args.config")

    param_cfg = ParamConfig()
    user_cfg = UserConfig.model_validate(_load_user_config_dict(config_path))

    cli_args = {
        k: v
        for k, v in {
            "base_dir": getattr(args, 'base_dir', None),
            "input_dir": getattr(args, 'input_dir', None),
            "input_files": getattr(args, 'input', None),
            "num_threads": getattr(args, 'threads', None),
            "backend": getattr(args, 'backend', None),
            "no_plots": getattr(args, 'no_plots', None),
            "log_level": "DEBUG" if getattr(args, 'verbose', False) else None,
        }.items()
        if v is not None
    }
    cli_cfg = CLIConfig.model_validate(cli_args)

    internal_config_dict = resolve_config(param_cfg, user_cfg, cli_cfg).model_dump()

    # --rerun cleanup happens BEFORE directory setup
    _handle_rerun_cleanup(internal_config_dict["base_dir"], getattr(args, 'rerun', False))
    output_dirs = _setup_output_directories(internal_config_dict["base_dir"])

    internal_config_dict["output_dirs"] = {k: str(v) for k, v in output_dirs.items()}
    internal_config_dict["run_id"] = generate_run_id()
    config = InternalConfig.model_validate(internal_config_dict)

    _persist_runtime_config(config, output_dirs)
    logger.info("Runtime initialization complete. Run ID: %s", config.run_id)
    return config


__all__ = ['init_runtime_config', 'generate_run_id']
