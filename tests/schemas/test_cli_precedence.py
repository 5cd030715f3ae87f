from astromesh.schemas.cli import CLIConfig
from astromesh.schemas.param import ParamConfig
from astromesh.schemas.resolve import resolve_config
from astromesh.schemas.user import UserConfig


def test_cli_overrides_do_not_mutate_user():
    user = UserConfig.model_validate({"NUM_THREADS": 2, "BACKEND": "cpu", "BASE_DIR": "/tmp"})

    cli = CLIConfig.model_validate({"num_threads": 8})

    internal = resolve_config(ParamConfig(), user, cli)

    # CLI should take precedence
    assert internal.threads.num_threads == 8

    # But the original user model should remain unchanged
    assert user.num_threads == 2


def test_cli_minimal_overrides_backend():
    """CLI backend override should work correctly."""
    user = UserConfig(base_dir="/tmp", backend="cpu")
    cli = CLIConfig(backend="gpu")

    config = resolve_config(ParamConfig(), user, cli)

    assert config.convolve.backend == "gpu"  # CLI wins
    assert config.base_dir == "/tmp"  # User value preserved


def test_cli_base_dir_overrides_user():
    user = UserConfig(base_dir="/tmp/user_out")
    cli = CLIConfig(base_dir="/tmp/cli_out")

    config = resolve_config(ParamConfig(), user, cli)

    assert config.base_dir == "/tmp/cli_out"


def test_cli_input_files_keep_user_pattern():
    """Explicit files from the CLI do not reset the user's directory search."""
    user = UserConfig(INPUT_DIR="/data", INPUT_PATTERN="*.fit")
    cli = CLIConfig(input_files=["extra.fits"])

    config = resolve_config(ParamConfig(), user, cli)

    assert config.input.files == ["extra.fits"]
    assert config.input.input_dir == "/data"
    assert config.input.pattern == "*.fit"


def test_cli_precedence_no_user_config():
    """CLI should work even without UserConfig."""
    cli = CLIConfig(num_threads=3, log_level="WARNING")

    config = resolve_config(ParamConfig(), None, cli)

    assert config.threads.num_threads == 3
    assert config.logging.level == "WARNING"


def test_cli_only_overrides_specified_fields():
    """CLI should only override fields that are explicitly set."""
    user = UserConfig(
        base_dir="/tmp",
        num_threads=2,
        qthresh=2.5,
    )

    # CLI only sets the backend
    cli = CLIConfig(backend="auto")

    config = resolve_config(ParamConfig(), user, cli)

    assert config.convolve.backend == "auto"  # CLI override
    assert config.threads.num_threads == 2  # User value preserved
    assert config.detection.qthresh == 2.5  # User value preserved


def test_no_plots_overrides_user_visualization():
    user = UserConfig(visualization={"enabled": True, "dpi": 100})
    cli = CLIConfig(no_plots=True)

    config = resolve_config(ParamConfig(), user, cli)

    assert config.visualization.enabled is False
    assert config.visualization.dpi == 100
