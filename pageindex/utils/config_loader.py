import os
from pathlib import Path
from typing import Any, Dict, Optional, Union

import yaml
from dotenv import find_dotenv, load_dotenv
from pydantic_settings import BaseSettings, SettingsConfigDict


PathLike = Union[str, Path]

DEFAULT_INDEX_ALIAS = "pages"


class Config(BaseSettings):
    mongo_url: str = "mongodb://localhost:27017"
    mongo_db: Optional[str] = None
    index_alias: str = DEFAULT_INDEX_ALIAS
    number_of_shards: int = 1
    number_of_replicas: int = 0
    page_size: int = 200
    merge_concurrency: int = 16
    max_pool_size: int = 100
    server_timeout_ms: int = 5000
    metrics_port: int = 8000

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    log_level: str = "INFO"
    log_path: Optional[str] = None


def load_environment(dotenv_path: PathLike | None = None, *, override: bool = False) -> bool:
    """Load variables from a .env file into the process environment.

    Returns True when a file was found and loaded.
    """

    path = dotenv_path
    if path is None:
        path = find_dotenv(usecwd=True)

    if not path:
        return False

    return load_dotenv(dotenv_path=path, override=override)


def _load_yaml_config(config_path: PathLike | None = None) -> Dict[str, Any]:
    if config_path is None:
        config_path = os.getenv("PAGEINDEX_CONFIG") or os.path.join(
            os.path.dirname(__file__), "../../config/config.yaml"
        )
    if not os.path.exists(config_path):
        return {}

    with open(config_path, "r") as f:
        return yaml.safe_load(f) or {}


def load_config(config_path: PathLike | None = None) -> Config:
    load_environment()
    file_data = _load_yaml_config(config_path)
    index_settings: Dict[str, Any] = file_data.get("index") or {}

    # environment -> config file -> default
    mongo_url = os.getenv("MONGO_URI") or os.getenv("MONGO_URL") or file_data.get("mongo_url")
    mongo_db = os.getenv("MONGO_DB") or file_data.get("mongo_db")
    index_alias = os.getenv("INDEX_ALIAS") or index_settings.get("alias") or DEFAULT_INDEX_ALIAS

    overrides: Dict[str, Any] = {
        key: index_settings[key]
        for key in ("number_of_shards", "number_of_replicas", "page_size", "merge_concurrency")
        if index_settings.get(key) is not None and key.upper() not in os.environ
    }
    overrides.update(
        {
            k: v
            for k, v in file_data.items()
            if k not in ("index", "mongo_url", "mongo_db") and k.upper() not in os.environ
        }
    )
    if mongo_url:
        overrides["mongo_url"] = mongo_url

    return Config(
        mongo_db=mongo_db,
        index_alias=index_alias,
        **overrides,
    )
