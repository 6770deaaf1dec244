"""
Diagnostic figures for a STAPLE run.

Plots the estimated confusion matrix of each observer as a heatmap and the
per-iteration maximum confusion matrix update.
"""

import logging
from pathlib import Path
from typing import Dict, List, Optional

import matplotlib.pyplot as plt
import numpy as np

logger = logging.getLogger(__name__)


def plot_confusion_matrices(
    confusion_matrices: Dict[str, np.ndarray],
    output_path: Path,
    max_columns: int = 4,
) -> Path:
    """
    Save a heatmap grid with one panel per observer.

    Args:
        confusion_matrices: Mapping of observer id to K x K matrix
        output_path: PNG path
        max_columns: Panels per row

    Returns:
        Path of the saved figure
    """
    output_path = Path(output_path)
    output_path.parent.mkdir(parents=True, exist_ok=True)

    n = len(confusion_matrices)
    n_cols = min(n, max_columns)
    n_rows = int(np.ceil(n / n_cols))

    fig, axes = plt.subplots(n_rows, n_cols, figsize=(4 * n_cols, 3.6 * n_rows), squeeze=False)

    for ax, (observer_id, matrix) in zip(axes.flat, confusion_matrices.items()):
        K = matrix.shape[0]
        im = ax.imshow(matrix, vmin=0.0, vmax=1.0, cmap="viridis")
        ax.set_title(observer_id)
        ax.set_xlabel("Observed label")
        ax.set_ylabel("True label")
        ax.set_xticks(range(K))
        ax.set_yticks(range(K))

        # Annotate cells for small label sets
        if K <= 8:
            for t in range(K):
                for o in range(K):
                    value = matrix[t, o]
                    ax.text(
                        o, t, f"{value:.2f}",
                        ha="center", va="center",
                        color="black" if value > 0.6 else "white",
                        fontsize=8,
                    )
        fig.colorbar(im, ax=ax, fraction=0.046, pad=0.04)

    for ax in list(axes.flat)[n:]:
        ax.axis("off")

    plt.tight_layout()
    plt.savefig(output_path, dpi=150, bbox_inches="tight")
    plt.close(fig)

    logger.info(f"Saved confusion matrix plot to {output_path}")
    return output_path


def plot_convergence(
    update_history: List[float],
    output_path: Path,
    threshold: Optional[float] = None,
) -> Path:
    """
    Save the max-update trace on a log scale.

    Args:
        update_history: Maximum confusion matrix update per iteration
        output_path: PNG path
        threshold: Termination threshold drawn as a reference line

    Returns:
        Path of the saved figure
    """
    output_path = Path(output_path)
    output_path.parent.mkdir(parents=True, exist_ok=True)

    fig, ax = plt.subplots(figsize=(6, 4))

    if update_history:
        iterations = np.arange(1, len(update_history) + 1)
        # Exact zeros cannot be drawn on a log axis
        values = np.maximum(np.asarray(update_history, dtype=float), np.finfo(float).tiny)
        ax.plot(iterations, values, marker="o", linewidth=1)
        ax.set_yscale("log")
    else:
        ax.text(0.5, 0.5, "No iterations", ha="center", va="center", transform=ax.transAxes)

    if threshold is not None and threshold > 0:
        ax.axhline(y=threshold, color="red", linestyle="--", linewidth=1, label="Termination threshold")
        ax.legend()

    ax.set_xlabel("Iteration")
    ax.set_ylabel("Max confusion matrix update")
    ax.set_title("STAPLE convergence")
    ax.grid(True, alpha=0.3)

    plt.tight_layout()
    plt.savefig(output_path, dpi=150, bbox_inches="tight")
    plt.close(fig)

    logger.info(f"Saved convergence plot to {output_path}")
    return output_path
