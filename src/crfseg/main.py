"""
Command line entry point.

    crfseg mapping  --img-dir data/images/train --label-dir data/labels/train --output-csv train.csv
    crfseg features --csv train.csv --output-dir data/features
    crfseg train    --train-csv train.csv --val-csv val.csv --output-dir data/models/crf
    crfseg search   --val-csv val.csv --model-dir data/models/crf
    crfseg infer    --csv test.csv --model-dir data/models/crf --output-dir data/results/predictions
    crfseg evaluate --csv test.csv --model-dir data/models/crf --output-dir data/results/reports
"""

import argparse
import logging
import sys
from typing import List, Optional

from crfseg.class_models.unary_model import UnaryModel
from crfseg.config import SegmentationConfig, load_config
from crfseg.cste import DataPath, ResultPath
from crfseg.errors import ConfigError
from crfseg.evaluation import print_evaluation_summary, save_evaluation_report
from crfseg.feature_extraction_pipeline import extract_features_batch
from crfseg.inference import evaluate_mapping, infer_batch
from crfseg.io_utils import build_mapping_csv, iter_labeled_images
from crfseg.logger import get_logger
from crfseg.pairwise import load_pairwise_weight, save_pairwise_weight
from crfseg.trainer import train_and_evaluate
from crfseg.weight_search import search_pairwise_weight

log = get_logger("main")


def _run_config(args: argparse.Namespace, base: Optional[SegmentationConfig] = None) -> SegmentationConfig:
    """Configuration from --config (or a saved model), with command line overrides."""
    if getattr(args, "config", None):
        config = load_config(args.config)
    elif base is not None:
        config = base
    else:
        config = SegmentationConfig().validate()

    overrides = {}
    if getattr(args, "n_jobs", None) is not None:
        overrides["n_jobs"] = args.n_jobs
    if getattr(args, "num_classes", None) is not None:
        overrides["num_classes"] = args.num_classes
    return config.with_overrides(**overrides) if overrides else config


def _resolve_weight(args: argparse.Namespace) -> float:
    if args.weight is not None:
        return args.weight
    return load_pairwise_weight(args.model_dir)


# ============================================================================
# SUBCOMMANDS
# ============================================================================

def cmd_mapping(args: argparse.Namespace) -> int:
    df = build_mapping_csv(args.img_dir, args.label_dir, args.output_csv, label_suffix=args.label_suffix)
    return 0 if len(df) else 1


def cmd_features(args: argparse.Namespace) -> int:
    config = _run_config(args)
    df = extract_features_batch(args.csv, args.output_dir, config)
    return 0 if len(df) else 1


def cmd_train(args: argparse.Namespace) -> int:
    config = _run_config(args)
    train_and_evaluate(
        config,
        train_csv=args.train_csv,
        val_csv=args.val_csv,
        test_csv=args.test_csv,
        output_dir=args.output_dir,
    )
    return 0


def cmd_search(args: argparse.Namespace) -> int:
    unary_model = UnaryModel.load(args.model_dir)
    config = _run_config(args, unary_model.segmentation_config)

    items = iter_labeled_images(args.val_csv, void_label=config.void_label)
    result = search_pairwise_weight(items, unary_model, config)
    save_pairwise_weight(result.chosen_weight, args.model_dir)

    log.info(f"Pairwise weight: {result.chosen_weight:g} ({result.num_images} image(s), {result.skipped} skipped)")
    return 0


def cmd_infer(args: argparse.Namespace) -> int:
    unary_model = UnaryModel.load(args.model_dir)
    config = _run_config(args, unary_model.segmentation_config)

    results = infer_batch(args.csv, unary_model, _resolve_weight(args), config, output_dir=args.output_dir)
    return 0 if all(labeling is not None for _, labeling, _ in results) else 1


def cmd_evaluate(args: argparse.Namespace) -> int:
    unary_model = UnaryModel.load(args.model_dir)
    config = _run_config(args, unary_model.segmentation_config)

    matrix, _ = evaluate_mapping(
        args.csv,
        unary_model,
        _resolve_weight(args),
        config,
        output_dir=args.predictions_dir,
        metrics_csv_path=args.metrics_csv,
    )
    print_evaluation_summary(matrix)
    save_evaluation_report(matrix, args.output_dir, args.name)
    return 0


# ============================================================================
# PARSER
# ============================================================================

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="crfseg",
        description="Pixel-level CRF segmentation: boosted unary model, contrast pairwise term, alpha-expansion",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--verbose", action="store_true", help="Debug logging")
    subparsers = parser.add_subparsers(dest="command", required=True)

    def add_common(sub: argparse.ArgumentParser) -> None:
        sub.add_argument("--config", default=None, help="JSON configuration file")
        sub.add_argument("--n-jobs", type=int, default=None, help="Worker processes")

    # mapping
    sub = subparsers.add_parser("mapping", help="Pair images and labels into a mapping CSV")
    sub.add_argument("--img-dir", default=DataPath.IMG_TRAIN)
    sub.add_argument("--label-dir", default=DataPath.LABEL_TRAIN)
    sub.add_argument("--output-csv", default=DataPath.CSV_MAPPING_TRAIN)
    sub.add_argument("--label-suffix", default="", help="Suffix of label basenames, e.g. '_m'")
    sub.set_defaults(func=cmd_mapping)

    # features
    sub = subparsers.add_parser("features", help="Precompute feature tensors of a mapping CSV as .npy")
    add_common(sub)
    sub.add_argument("--csv", default=DataPath.CSV_MAPPING_TRAIN)
    sub.add_argument("--output-dir", default=DataPath.FEATURE_DIR)
    sub.set_defaults(func=cmd_features)

    # train
    sub = subparsers.add_parser("train", help="Train the unary model and search the pairwise weight")
    add_common(sub)
    sub.add_argument("--num-classes", type=int, default=None)
    sub.add_argument("--train-csv", default=DataPath.CSV_MAPPING_TRAIN)
    sub.add_argument("--val-csv", default=None)
    sub.add_argument("--test-csv", default=None)
    sub.add_argument("--output-dir", default=DataPath.MODEL_DIR)
    sub.set_defaults(func=cmd_train)

    # search
    sub = subparsers.add_parser("search", help="Search the pairwise weight of a trained model")
    add_common(sub)
    sub.add_argument("--val-csv", default=DataPath.CSV_MAPPING_VAL)
    sub.add_argument("--model-dir", default=DataPath.MODEL_DIR)
    sub.set_defaults(func=cmd_search)

    # infer
    sub = subparsers.add_parser("infer", help="Label every image of a mapping CSV")
    add_common(sub)
    sub.add_argument("--csv", default=DataPath.CSV_MAPPING_TEST)
    sub.add_argument("--model-dir", default=DataPath.MODEL_DIR)
    sub.add_argument("--weight", type=float, default=None, help="Pairwise weight, default the stored one")
    sub.add_argument("--output-dir", default=ResultPath.PREDICTION_PATH)
    sub.set_defaults(func=cmd_infer)

    # evaluate
    sub = subparsers.add_parser("evaluate", help="Infer and score a labeled mapping CSV")
    add_common(sub)
    sub.add_argument("--csv", default=DataPath.CSV_MAPPING_TEST)
    sub.add_argument("--model-dir", default=DataPath.MODEL_DIR)
    sub.add_argument("--weight", type=float, default=None, help="Pairwise weight, default the stored one")
    sub.add_argument("--output-dir", default=ResultPath.REPORT_PATH)
    sub.add_argument("--predictions-dir", default=None, help="Also save predicted labelings here")
    sub.add_argument("--metrics-csv", default=ResultPath.EVALUATION_CSV_PATH)
    sub.add_argument("--name", default="crf", help="Report file prefix")
    sub.set_defaults(func=cmd_evaluate)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.verbose:
        for name in list(logging.root.manager.loggerDict):
            if name.startswith("crfseg."):
                logging.getLogger(name).setLevel(logging.DEBUG)

    try:
        return args.func(args)
    except (ConfigError, FileNotFoundError) as e:
        log.error(str(e))
        return 2


if __name__ == "__main__":
    sys.exit(main())
