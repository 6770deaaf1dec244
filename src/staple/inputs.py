"""
Input handling for STAPLE: observer volumes and the admissible pixel mask.

The observer volumes are stacked once into an ``(N, *grid)`` array and never
modified. ``MaskFilter`` flattens the grid and keeps only admissible pixels so
the estimation steps work on ``(N, P)`` label arrays.
"""

import logging
from typing import List, Mapping, Optional, Sequence, Union

import numpy as np

from src.staple.options import StapleConfigurationError

logger = logging.getLogger(__name__)

ObserverVolumes = Union[Mapping[str, np.ndarray], Sequence[np.ndarray]]


class InputCollection:
    """
    Read-only holder of N observer label volumes on one pixel grid.

    Args:
        observations: Mapping of observer id to label volume, or a sequence of
            volumes (ids become ``observer_0``, ``observer_1``, ...). The first
            observer in iteration order provides the fallback labels.
        mask: Optional volume of the same shape; non-zero pixels are admissible
        number_of_classes: Optional explicit K; labels must lie in [0, K)

    Raises:
        StapleConfigurationError: On fewer than 2 observers, mismatched shapes,
            non-integer or negative labels, labels >= K, or fewer than 2 classes
    """

    def __init__(
        self,
        observations: ObserverVolumes,
        mask: Optional[np.ndarray] = None,
        number_of_classes: Optional[int] = None,
    ):
        if isinstance(observations, Mapping):
            ids = [str(key) for key in observations.keys()]
            volumes = [np.asarray(volume) for volume in observations.values()]
        else:
            volumes = [np.asarray(volume) for volume in observations]
            ids = [f"observer_{i}" for i in range(len(volumes))]

        if len(volumes) < 2:
            raise StapleConfigurationError(
                f"At least 2 observers are required, got {len(volumes)}"
            )

        shape = volumes[0].shape
        for observer_id, volume in zip(ids, volumes):
            if volume.ndim != len(shape) or volume.shape != shape:
                raise StapleConfigurationError(
                    f"Geometry mismatch: observer '{observer_id}' has shape {volume.shape}, "
                    f"expected {shape} (from observer '{ids[0]}')"
                )
            if not np.issubdtype(volume.dtype, np.integer) and not np.issubdtype(volume.dtype, np.bool_):
                raise StapleConfigurationError(
                    f"Observer '{observer_id}' has non-integer dtype {volume.dtype}; "
                    "label volumes must hold discrete labels"
                )
            if volume.size > 0 and volume.min() < 0:
                raise StapleConfigurationError(
                    f"Observer '{observer_id}' contains negative labels"
                )

        self.observer_ids: List[str] = ids
        self.shape = tuple(shape)
        self.label_dtype = np.result_type(*[volume.dtype for volume in volumes])
        if self.label_dtype == np.bool_:
            self.label_dtype = np.dtype(np.uint8)
        self.labels = np.stack([volume.astype(self.label_dtype, copy=False) for volume in volumes])
        self.labels.setflags(write=False)

        self.max_label = int(self.labels.max()) if self.labels.size > 0 else 0

        if number_of_classes is None:
            self.number_of_classes = self.max_label + 1
        else:
            self.number_of_classes = int(number_of_classes)
            if self.max_label >= self.number_of_classes:
                raise StapleConfigurationError(
                    f"Label {self.max_label} found in the inputs, but number_of_classes "
                    f"is {self.number_of_classes}"
                )
        if self.number_of_classes < 2:
            raise StapleConfigurationError(
                f"At least 2 classes are required, found {self.number_of_classes}"
            )

        self.mask = MaskFilter(mask, self.shape)

        logger.info(
            f"Loaded {self.number_of_observers} observers on grid {self.shape} "
            f"({self.number_of_classes} classes, {self.mask.count} admissible pixels)"
        )

    @property
    def number_of_observers(self) -> int:
        return len(self.observer_ids)

    def first_observer(self) -> np.ndarray:
        """Label volume of the first observer (used as the fallback labeling)."""
        return self.labels[0]

    def masked_labels(self) -> np.ndarray:
        """Observer labels at admissible pixels as an ``(N, P)`` int64 array."""
        flat = self.labels.reshape(self.number_of_observers, -1)
        return flat[:, self.mask.flat_indices].astype(np.int64)


class MaskFilter:
    """
    Admissible pixel subset of the grid.

    Args:
        mask: Optional volume with the grid shape; non-zero means admissible.
            Without a mask every pixel is admissible.
        shape: Grid shape of the observer volumes
    """

    def __init__(self, mask: Optional[np.ndarray], shape: tuple):
        self.shape = tuple(shape)

        if mask is None:
            self.volume = np.ones(self.shape, dtype=bool)
            self.is_full = True
        else:
            mask = np.asarray(mask)
            if mask.ndim != len(self.shape) or mask.shape != self.shape:
                raise StapleConfigurationError(
                    f"Geometry mismatch: mask has shape {mask.shape}, expected {self.shape}"
                )
            self.volume = mask != 0
            self.is_full = bool(self.volume.all())

        self.flat_indices = np.flatnonzero(self.volume)
        self.count = int(self.flat_indices.size)

        if self.count == 0:
            raise StapleConfigurationError("The mask excludes every pixel; nothing to estimate")

    def select(self, volume: np.ndarray) -> np.ndarray:
        """Flatten the trailing grid axes of ``volume`` and keep admissible pixels."""
        lead = volume.shape[: volume.ndim - len(self.shape)]
        return volume.reshape(lead + (-1,))[..., self.flat_indices]

    def scatter(self, values: np.ndarray, fill, dtype=None) -> np.ndarray:
        """
        Place per-admissible-pixel values back onto the full grid.

        Args:
            values: Array of shape (..., P)
            fill: Value (scalar or full-grid array) for pixels outside the mask
            dtype: Output dtype (default: dtype of values)

        Returns:
            Array of shape (..., *grid)
        """
        dtype = values.dtype if dtype is None else dtype
        lead = values.shape[:-1]
        out = np.empty(lead + (int(np.prod(self.shape)),), dtype=dtype)
        if np.isscalar(fill):
            out[...] = fill
        else:
            out[...] = np.asarray(fill).reshape(-1)
        out[..., self.flat_indices] = values
        return out.reshape(lead + self.shape)
