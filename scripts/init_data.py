"""Initialize data directory structure and write the default fraud config."""

import os

from shared.config import DATA_DIR, FraudConfig, init_data_dirs
from shared.file_store import FileStore


def init():
    init_data_dirs(DATA_DIR)
    config_path = os.path.join(DATA_DIR, "fraud_config.json")
    if not os.path.exists(config_path):
        FileStore.write_json(config_path, FraudConfig().model_dump())
    print(f"Data directories initialized at {DATA_DIR}")


if __name__ == "__main__":
    init()
