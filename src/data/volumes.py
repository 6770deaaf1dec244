"""
Volume I/O for the combine-segmentations pipeline.

This module provides functionality to:
- Load observer label volumes and masks from TIFF files
- Write the combined labeling and per-class probability volumes
- Save estimated confusion matrices as a long-format CSV manifest
- Save a YAML run summary for reproducibility
"""

import logging
from collections import OrderedDict
from pathlib import Path
from typing import Dict, List, Optional, Sequence

import numpy as np
import pandas as pd
import tifffile
import yaml

logger = logging.getLogger(__name__)

CONFUSION_COLUMNS = ["observer", "true_label", "observed_label", "probability"]


def read_volume(path: Path) -> np.ndarray:
    """
    Read a label or mask volume.

    Args:
        path: Path to a TIFF file

    Returns:
        Volume as stored in the file (2D image or 3D stack)
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Volume not found: {path}")

    try:
        volume = tifffile.imread(path)
    except Exception as e:
        logger.error(f"Failed to read volume {path}: {e}")
        raise ValueError(f"Could not read volume from {path}") from e

    logger.debug(f"Read {path.name}: shape={volume.shape}, dtype={volume.dtype}")
    return volume


def load_observers(paths: Sequence[Path]) -> Dict[str, np.ndarray]:
    """
    Load observer segmentations, keyed by file stem in the given order.

    The first path is the first observer, whose labels are used outside the
    mask. Duplicate stems get a numeric suffix.

    Args:
        paths: Paths to observer label volumes

    Returns:
        Ordered mapping of observer id to label volume
    """
    observers: Dict[str, np.ndarray] = OrderedDict()
    for path in paths:
        path = Path(path)
        observer_id = path.stem
        suffix = 1
        while observer_id in observers:
            observer_id = f"{path.stem}_{suffix}"
            suffix += 1
        observers[observer_id] = read_volume(path)

    logger.info(f"Loaded {len(observers)} observer volumes")
    return observers


def write_label_volume(labels: np.ndarray, output_path: Path) -> Path:
    """Write the combined labeling as a TIFF file."""
    output_path = Path(output_path)
    output_path.parent.mkdir(parents=True, exist_ok=True)
    tifffile.imwrite(output_path, labels)
    logger.info(f"Saved combined segmentation to {output_path}")
    return output_path


def write_probability_volumes(
    probabilities: np.ndarray,
    output_dir: Path,
    prefix: str = "probability",
    dtype=np.float32,
) -> List[Path]:
    """
    Write one probability volume per class.

    Args:
        probabilities: Array of shape (K, *grid)
        output_dir: Directory for the TIFF files
        prefix: File name prefix; files are named ``{prefix}_{class:03d}.tif``
        dtype: Storage dtype

    Returns:
        Paths of the written files, in class order
    """
    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)

    paths = []
    for class_index, volume in enumerate(probabilities):
        path = output_dir / f"{prefix}_{class_index:03d}.tif"
        tifffile.imwrite(path, volume.astype(dtype))
        paths.append(path)

    logger.info(f"Saved {len(paths)} probability volumes to {output_dir}")
    return paths


def confusion_matrices_to_dataframe(confusion_matrices: Dict[str, np.ndarray]) -> pd.DataFrame:
    """Long-format table with one row per (observer, true label, observed label)."""
    records = []
    for observer_id, matrix in confusion_matrices.items():
        K = matrix.shape[0]
        for true_label in range(K):
            for observed_label in range(K):
                records.append({
                    "observer": observer_id,
                    "true_label": true_label,
                    "observed_label": observed_label,
                    "probability": float(matrix[true_label, observed_label]),
                })
    return pd.DataFrame(records, columns=CONFUSION_COLUMNS)


def save_confusion_matrices(confusion_matrices: Dict[str, np.ndarray], output_path: Path) -> pd.DataFrame:
    """
    Save confusion matrices to CSV.

    Args:
        confusion_matrices: Mapping of observer id to K x K matrix
        output_path: CSV path

    Returns:
        The saved DataFrame
    """
    output_path = Path(output_path)
    output_path.parent.mkdir(parents=True, exist_ok=True)

    df = confusion_matrices_to_dataframe(confusion_matrices)
    df.to_csv(output_path, index=False)

    logger.info(f"Saved confusion matrices to {output_path}")
    return df


def load_confusion_matrices(csv_path: Path, observer_ids: Optional[Sequence[str]] = None) -> np.ndarray:
    """
    Load confusion matrices saved by save_confusion_matrices.

    Args:
        csv_path: CSV path
        observer_ids: Observer order for the returned array (default: file order)

    Returns:
        Array (N, K, K), e.g. to seed a new run
    """
    df = pd.read_csv(csv_path)
    missing = set(CONFUSION_COLUMNS) - set(df.columns)
    if missing:
        raise ValueError(f"Confusion matrix CSV {csv_path} lacks columns: {sorted(missing)}")

    if observer_ids is None:
        observer_ids = list(dict.fromkeys(df["observer"].astype(str)))
    K = int(max(df["true_label"].max(), df["observed_label"].max())) + 1

    matrices = np.zeros((len(observer_ids), K, K), dtype=np.float64)
    df = df.assign(observer=df["observer"].astype(str))
    for i, observer_id in enumerate(observer_ids):
        rows = df[df["observer"] == str(observer_id)]
        if len(rows) == 0:
            raise ValueError(f"Observer '{observer_id}' not found in {csv_path}")
        matrices[i, rows["true_label"].to_numpy(), rows["observed_label"].to_numpy()] = rows[
            "probability"
        ].to_numpy()

    logger.info(f"Loaded confusion matrices for {len(observer_ids)} observers from {csv_path}")
    return matrices


def save_run_summary(summary: dict, output_path: Path) -> None:
    """Save the run summary (and config snapshot) as YAML."""
    output_path = Path(output_path)
    output_path.parent.mkdir(parents=True, exist_ok=True)
    with open(output_path, "w") as f:
        yaml.dump(summary, f, default_flow_style=False, sort_keys=False)
    logger.info(f"Saved run summary to {output_path}")
