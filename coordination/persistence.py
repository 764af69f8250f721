"""
Model Store - Versioned on-disk artifacts for learning algorithms.

Each save writes a new timestamped version directory next to the previous
ones, which remain as backups (up to max_backups). Loading walks versions
newest-first and falls back to older backups when an artifact is corrupt.
"""

from typing import Dict, Any, List, Optional
import json
import logging
import os
import shutil
import threading
import time

import numpy as np

from agents.base import LearningAlgorithm, ModelLoadError

logger = logging.getLogger(__name__)

METADATA_FILE = 'metadata.json'


class ModelStore:
    """Directory-backed store of model versions"""

    def __init__(self, base_dir: str = "models", max_backups: int = 5):
        self.base_dir = base_dir
        self.max_backups = max_backups
        self._lock = threading.Lock()
        self._sequence = 0

        os.makedirs(base_dir, exist_ok=True)

    def _model_dir(self, name: str) -> str:
        return os.path.join(self.base_dir, name)

    def list_versions(self, name: str) -> List[str]:
        """Version directory names, newest first"""
        model_dir = self._model_dir(name)
        if not os.path.isdir(model_dir):
            return []
        versions = [d for d in os.listdir(model_dir)
                    if d.startswith('v_') and os.path.isdir(os.path.join(model_dir, d))]
        return sorted(versions, reverse=True)

    def save(self, name: str, algorithm: LearningAlgorithm,
             extra: Optional[Dict[str, Any]] = None) -> str:
        """Write a new version and prune old backups; returns its path"""
        with self._lock:
            self._sequence += 1
            now = time.time()
            stamp = time.strftime('%Y%m%d-%H%M%S', time.localtime(now))
            version = f"v_{stamp}_{int(now * 1e6) % 1000000:06d}_{self._sequence:04d}"
            model_dir = self._model_dir(name)
            final_path = os.path.join(model_dir, version)
            tmp_path = os.path.join(model_dir, f".tmp_{version}")
            os.makedirs(tmp_path, exist_ok=True)

            try:
                algorithm.save_model(tmp_path)
                metadata = {
                    'name': name,
                    'version': version,
                    'algorithm': getattr(algorithm, 'name', type(algorithm).__name__),
                    'saved_at': time.time(),
                    'stats': _to_native(algorithm.get_stats()),
                }
                if extra:
                    metadata['extra'] = _to_native(extra)
                with open(os.path.join(tmp_path, METADATA_FILE), 'w') as f:
                    json.dump(metadata, f, indent=2)
                os.replace(tmp_path, final_path)
            except Exception:
                shutil.rmtree(tmp_path, ignore_errors=True)
                raise

            self._prune(name)
        logger.info(f"Saved model {name} version {version}")
        return final_path

    def _prune(self, name: str):
        versions = self.list_versions(name)
        for version in versions[self.max_backups + 1:]:
            shutil.rmtree(os.path.join(self._model_dir(name), version), ignore_errors=True)
            logger.debug(f"Pruned old version {name}/{version}")

    def load_latest(self, name: str, algorithm: LearningAlgorithm) -> str:
        """
        Load the newest readable version into algorithm.

        Raises ModelLoadError when no version could be loaded.
        """
        versions = self.list_versions(name)
        if not versions:
            raise ModelLoadError(f"No saved versions of {name} in {self.base_dir}")

        for version in versions:
            path = os.path.join(self._model_dir(name), version)
            try:
                algorithm.load_model(path)
            except ModelLoadError as e:
                logger.warning(f"Version {name}/{version} unusable, trying backup: {e}")
                continue
            logger.info(f"Loaded model {name} version {version}")
            return path

        raise ModelLoadError(f"All {len(versions)} versions of {name} failed to load")

    def read_metadata(self, name: str, version: str) -> Dict[str, Any]:
        path = os.path.join(self._model_dir(name), version, METADATA_FILE)
        with open(path, 'r') as f:
            return json.load(f)


def _to_native(obj):
    """Convert numpy scalars and arrays for JSON"""
    if isinstance(obj, np.integer):
        return int(obj)
    if isinstance(obj, np.floating):
        return float(obj)
    if isinstance(obj, np.ndarray):
        return obj.tolist()
    if isinstance(obj, dict):
        return {str(k): _to_native(v) for k, v in obj.items()}
    if isinstance(obj, (list, tuple)):
        return [_to_native(v) for v in obj]
    if isinstance(obj, float) and obj in (float('inf'), float('-inf')):
        return None
    return obj
