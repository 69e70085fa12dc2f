"""
Runtime configuration loaded from the environment (and an optional .env file).
"""

import os
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path

from dotenv import load_dotenv

from cloudrun_deployer.constants import DEFAULT_MAX_DIRECT_SOURCE_BYTES


def _env_flag(name: str, default: str = 'false') -> bool:
    return os.getenv(name, default).strip().lower() in ('1', 'true', 'yes', 'on')


@dataclass(frozen=True)
class Settings:
    default_region: str
    skip_iam_check: bool
    log_level: str
    temp_base_dir: str
    max_direct_source_bytes: int

    @classmethod
    def from_env(cls) -> 'Settings':
        return cls(
            default_region=os.getenv('GOOGLE_CLOUD_REGION', 'europe-west1'),
            skip_iam_check=_env_flag('SKIP_IAM_CHECK'),
            log_level=os.getenv('LOG_LEVEL', 'INFO').upper(),
            temp_base_dir=os.getenv(
                'DEPLOYER_TEMP_DIR',
                str(Path.home() / '.cloud-run-deployer' / 'source')
            ),
            max_direct_source_bytes=int(
                os.getenv('MAX_DIRECT_SOURCE_BYTES', str(DEFAULT_MAX_DIRECT_SOURCE_BYTES))
            ),
        )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    load_dotenv()
    return Settings.from_env()
