# Config モジュール
from src.config.experiment_config import ExperimentEngineConfig

__all__ = [
    "ExperimentEngineConfig",
]
