"""
Command-line interface entrypoint for combining segmentations with STAPLE.

Settings come from an optional YAML config file; command-line flags override
the values loaded from it.
"""

import argparse
import logging
import signal
import sys
import threading
from pathlib import Path

import numpy as np
import yaml
from tqdm import tqdm

from src.data.volumes import (
    load_confusion_matrices,
    load_observers,
    read_volume,
    save_confusion_matrices,
    save_run_summary,
    write_label_volume,
    write_probability_volumes,
)
from src.staple.engine import combine_segmentations as run_staple
from src.staple.options import StapleOptions

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Combine several label volumes of the same scene into a consensus "
        "segmentation (multi-label STAPLE)"
    )
    parser.add_argument("--config", help="Path to YAML config file")
    parser.add_argument("--inputs", nargs="+", help="Observer label volumes (first one is the fallback)")
    parser.add_argument("--mask", help="Mask volume; only non-zero pixels are used for estimation")
    parser.add_argument("--output", help="Path of the combined label volume")
    parser.add_argument("--spatial-priors", nargs="+", help="One prior probability volume per class")
    parser.add_argument("--seed-matrices", help="CSV of confusion matrices to start from")

    parser.add_argument("--number-of-classes", type=int, help="Number of classes (default: max label + 1)")
    parser.add_argument("--priors", nargs="+", type=float, help="Prior probability per class")
    parser.add_argument("--prior-preference", nargs="+", type=int, help="Tie-break rank per class (lower wins)")
    parser.add_argument("--trust", nargs="+", type=float, help="Observer trust, one value or one per observer")
    parser.add_argument("--threshold", type=float, help="Termination update threshold")
    parser.add_argument("--no-threshold", action="store_true", help="Disable the termination threshold")
    parser.add_argument("--max-iterations", type=int, help="Maximum number of iterations")
    parser.add_argument("--majority-voting", action="store_true", help="Initialize by majority voting")
    parser.add_argument("--undecided-label", type=int, help="Label for undecided pixels")
    parser.add_argument("--block-size", type=int, help="Pixels per processing tile")
    parser.add_argument("--num-workers", type=int, help="Worker threads for tile processing")

    parser.add_argument("--probabilities-dir", help="Write one probability volume per class here")
    parser.add_argument("--matrices-csv", help="Write the estimated confusion matrices to this CSV")
    parser.add_argument("--summary", help="Write a YAML run summary to this path")
    parser.add_argument("--plots-dir", help="Write confusion matrix and convergence plots here")
    parser.add_argument("--no-progress", action="store_true", help="Disable the progress bar")
    return parser


def load_config(config_path: Path) -> dict:
    """Load a combine config; missing sections default to empty."""
    with open(config_path, "r") as f:
        config = yaml.safe_load(f) or {}

    for section in ("data", "staple", "output"):
        config[section] = config.get(section) or {}
    return config


def apply_overrides(config: dict, args: argparse.Namespace) -> dict:
    """Apply command-line overrides on top of the loaded config."""
    data = config["data"]
    staple = config["staple"]
    output = config["output"]

    if args.inputs:
        data["inputs"] = args.inputs
    if args.mask:
        data["mask"] = args.mask
    if args.spatial_priors:
        data["spatial_priors"] = args.spatial_priors
    if args.seed_matrices:
        data["seed_matrices"] = args.seed_matrices

    if args.number_of_classes is not None:
        staple["number_of_classes"] = args.number_of_classes
    if args.priors:
        staple["prior_probabilities"] = args.priors
    if args.prior_preference:
        staple["prior_preference"] = args.prior_preference
    if args.trust:
        staple["observer_trust"] = args.trust[0] if len(args.trust) == 1 else args.trust
    if args.threshold is not None:
        staple["termination_update_threshold"] = args.threshold
    if args.no_threshold:
        staple["termination_update_threshold"] = None
    if args.max_iterations is not None:
        staple["maximum_number_of_iterations"] = args.max_iterations
    if args.majority_voting:
        staple["initialize_with_majority_voting"] = True
    if args.undecided_label is not None:
        staple["label_for_undecided_pixels"] = args.undecided_label
    if args.block_size is not None:
        staple["block_size"] = args.block_size
    if args.num_workers is not None:
        staple["num_workers"] = args.num_workers
    if args.probabilities_dir:
        staple["probabilistic_output"] = True
        output["probabilities_dir"] = args.probabilities_dir

    if args.output:
        output["labels"] = args.output
    if args.matrices_csv:
        output["confusion_matrices"] = args.matrices_csv
    if args.summary:
        output["summary"] = args.summary
    if args.plots_dir:
        output["plots_dir"] = args.plots_dir

    return config


def combine_segmentations(argv=None):
    """Combine observer segmentations and write the consensus labeling."""
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        if args.config:
            config = load_config(Path(args.config))
        else:
            config = {"data": {}, "staple": {}, "output": {}}
        config = apply_overrides(config, args)

        data = config["data"]
        output = config["output"]
        if not data.get("inputs"):
            raise ValueError("No input volumes given (use --inputs or data.inputs in the config)")
        if not output.get("labels") and not output.get("probabilities_dir"):
            raise ValueError("No output given (use --output or output.labels in the config)")
        if output.get("probabilities_dir"):
            config["staple"]["probabilistic_output"] = True
        if not output.get("labels"):
            config["staple"]["label_output"] = False

        options = StapleOptions.from_dict(config["staple"])

        observers = load_observers([Path(p) for p in data["inputs"]])
        mask = read_volume(Path(data["mask"])) if data.get("mask") else None

        if data.get("spatial_priors"):
            options.spatial_prior_probabilities = np.stack(
                [read_volume(Path(p)) for p in data["spatial_priors"]]
            )
        if data.get("seed_matrices"):
            options.initial_confusion_matrices = load_confusion_matrices(
                Path(data["seed_matrices"]), observer_ids=list(observers)
            )

        cancel_event = threading.Event()

        def request_abort(signum, frame):
            logging.warning("Interrupt received; stopping after the current iteration")
            cancel_event.set()

        # Signal handlers can only be installed from the main thread
        previous_handler = None
        if threading.current_thread() is threading.main_thread():
            previous_handler = signal.signal(signal.SIGINT, request_abort)

        pbar = tqdm(desc="STAPLE iterations", unit="it", disable=args.no_progress)

        def on_iteration(iteration, max_update):
            pbar.update(1)
            pbar.set_postfix({"max_update": f"{max_update:.2e}"})

        try:
            result = run_staple(
                observers,
                options,
                mask=mask,
                progress_callback=on_iteration,
                cancel_event=cancel_event,
            )
        finally:
            pbar.close()
            if previous_handler is not None:
                signal.signal(signal.SIGINT, previous_handler)

        if output.get("labels"):
            write_label_volume(result.labels, Path(output["labels"]))
        if output.get("probabilities_dir"):
            write_probability_volumes(result.probabilities, Path(output["probabilities_dir"]))
        if output.get("confusion_matrices"):
            save_confusion_matrices(result.confusion_matrices, Path(output["confusion_matrices"]))
        if output.get("summary"):
            summary = result.summary()
            summary["config"] = {
                "data": data,
                "staple": options.to_dict(),
                "output": output,
            }
            save_run_summary(summary, Path(output["summary"]))
        if output.get("plots_dir"):
            from src.visualization.report import plot_confusion_matrices, plot_convergence

            plots_dir = Path(output["plots_dir"])
            plot_confusion_matrices(result.confusion_matrices, plots_dir / "confusion_matrices.png")
            plot_convergence(
                result.update_history,
                plots_dir / "convergence.png",
                threshold=options.termination_update_threshold,
            )

        status = "converged" if result.converged else "not converged"
        print(
            f"\nSTAPLE finished after {result.elapsed_iterations} iterations ({status}); "
            f"last max update: {result.max_update}"
        )
        for observer_id, matrix in result.confusion_matrices.items():
            print(f"  {observer_id}: mean diagonal {np.mean(np.diag(matrix)):.4f}")

        return 0

    except Exception as e:
        logging.error(f"Combining segmentations failed: {e}", exc_info=True)
        return 1


if __name__ == "__main__":
    sys.exit(combine_segmentations())
