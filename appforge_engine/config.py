import os
import yaml
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional

from .build_tracker import PollPolicy
from .logger_setup import logger, mask_token
from .models import GlobalConfig
from .rate_limit import RetryPolicy

ENV_PREFIX = "APPFORGE_"
DEFAULT_GITHUB_API_URL = "https://api.github.com"
DEFAULT_CODEMAGIC_API_URL = "https://api.codemagic.io"
DEFAULT_DATA_DIR = Path(__file__).resolve().parent.parent / "data"

REQUIRED_BATCH_FIELDS = ('github_username', 'package_prefix', 'author_name', 'author_email')
TOGGLES = ('create_repositories', 'trigger_builds', 'track_builds')


def load_global_config(config_file: Path) -> GlobalConfig:
    """Reads the `batch:` section of a YAML file into a GlobalConfig.

    `ci_manifest_file` may point at a manifest to use verbatim, relative to the
    config file. Raises ValueError naming the file and the offending field.
    """
    try:
        with open(config_file, 'r', encoding='utf-8') as f:
            raw = yaml.safe_load(f)
    except yaml.YAMLError as ye:
        raise ValueError(f"YAML syntax error in {config_file.name}: {ye}")
    except IOError as e:
        raise ValueError(f"Cannot read batch config {config_file}: {e}")

    batch = raw.get('batch') if isinstance(raw, dict) else None
    if not isinstance(batch, dict):
        raise ValueError(f"Batch config {config_file.name} must contain a 'batch' mapping.")

    missing = [f for f in REQUIRED_BATCH_FIELDS if not batch.get(f)]
    if missing:
        raise ValueError(f"Batch config {config_file.name} is missing required field(s): {', '.join(missing)}")

    for toggle in TOGGLES:
        if toggle in batch and not isinstance(batch[toggle], bool):
            raise ValueError(f"'{toggle}' in {config_file.name} must be true or false. Found: {batch[toggle]!r}")

    variables = batch.get('build_variables') or {}
    if not isinstance(variables, dict):
        raise ValueError(f"'build_variables' in {config_file.name} must be a mapping. Found type: {type(variables)}")

    manifest_override = batch.get('ci_manifest')
    manifest_file = batch.get('ci_manifest_file')
    if manifest_file:
        manifest_path = (config_file.parent / manifest_file)
        try:
            manifest_override = manifest_path.read_text(encoding='utf-8')
        except IOError as e:
            raise ValueError(f"'ci_manifest_file' in {config_file.name} cannot be read: {e}")

    return GlobalConfig(
        github_username=str(batch['github_username']),
        package_prefix=str(batch['package_prefix']),
        author_name=str(batch['author_name']),
        author_email=str(batch['author_email']),
        app_version=str(batch.get('app_version', "1.0.0")),
        workflow_id=str(batch.get('workflow_id', "cordova_android_build")),
        branch=str(batch.get('branch', "main")),
        ci_manifest_override=manifest_override,
        build_variables={str(k): str(v) for k, v in variables.items()},
        create_repositories=batch.get('create_repositories', True),
        trigger_builds=batch.get('trigger_builds', True),
        track_builds=batch.get('track_builds', True),
    )


def _env_number(env: Mapping[str, str], name: str, default, cast):
    value = env.get(ENV_PREFIX + name)
    if value is None or value == "":
        return default
    try:
        return cast(value)
    except ValueError:
        raise ValueError(f"Environment variable {ENV_PREFIX}{name} must be a number. Found: {value!r}")


@dataclass(frozen=True)
class ServiceSettings:
    github_token: Optional[str] = None
    github_api_url: str = DEFAULT_GITHUB_API_URL
    codemagic_token: Optional[str] = None
    codemagic_api_url: str = DEFAULT_CODEMAGIC_API_URL
    codemagic_team_id: Optional[str] = None
    http_timeout: float = 30.0
    max_retries: int = 3
    retry_delay: float = 1.0
    poll_initial_delay: float = 10.0
    poll_interval: float = 45.0
    poll_max_attempts: int = 40
    poll_deadline: float = 3600.0
    data_dir: Path = DEFAULT_DATA_DIR

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> 'ServiceSettings':
        env = os.environ if environ is None else environ
        settings = cls(
            github_token=env.get(ENV_PREFIX + "GITHUB_TOKEN") or None,
            github_api_url=env.get(ENV_PREFIX + "GITHUB_API_URL") or DEFAULT_GITHUB_API_URL,
            codemagic_token=env.get(ENV_PREFIX + "CODEMAGIC_TOKEN") or None,
            codemagic_api_url=env.get(ENV_PREFIX + "CODEMAGIC_API_URL") or DEFAULT_CODEMAGIC_API_URL,
            codemagic_team_id=env.get(ENV_PREFIX + "CODEMAGIC_TEAM_ID") or None,
            http_timeout=_env_number(env, "HTTP_TIMEOUT", 30.0, float),
            max_retries=_env_number(env, "MAX_RETRIES", 3, int),
            retry_delay=_env_number(env, "RETRY_DELAY", 1.0, float),
            poll_initial_delay=_env_number(env, "POLL_INITIAL_DELAY", 10.0, float),
            poll_interval=_env_number(env, "POLL_INTERVAL", 45.0, float),
            poll_max_attempts=_env_number(env, "POLL_MAX_ATTEMPTS", 40, int),
            poll_deadline=_env_number(env, "POLL_DEADLINE", 3600.0, float),
            data_dir=Path(env[ENV_PREFIX + "DATA_DIR"]) if env.get(ENV_PREFIX + "DATA_DIR") else DEFAULT_DATA_DIR,
        )
        logger.debug(f"Service settings: github token {mask_token(settings.github_token)}, "
                     f"codemagic token {mask_token(settings.codemagic_token)}, data dir {settings.data_dir}")
        return settings

    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(max_retries=self.max_retries, base_delay=self.retry_delay)

    def poll_policy(self) -> PollPolicy:
        return PollPolicy(
            initial_delay=self.poll_initial_delay,
            interval=self.poll_interval,
            max_attempts=self.poll_max_attempts,
            deadline=self.poll_deadline,
        )

    def missing_credentials(self, config: GlobalConfig) -> list:
        missing = []
        if config.create_repositories and not self.github_token:
            missing.append(ENV_PREFIX + "GITHUB_TOKEN")
        if config.create_repositories and config.trigger_builds and not self.codemagic_token:
            missing.append(ENV_PREFIX + "CODEMAGIC_TOKEN")
        return missing
