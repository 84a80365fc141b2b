import json

import numpy as np
import pytest
from PIL import Image

from crfseg.io_utils import save_labels
from crfseg.main import build_parser, main

from conftest import make_two_region_image


def write_dirs(root, n=3):
    img_dir = root / "images"
    label_dir = root / "labels"
    img_dir.mkdir()
    label_dir.mkdir()
    for i in range(n):
        img, labels = make_two_region_image(seed=i)
        Image.fromarray((img * 255).round().astype(np.uint8)).save(img_dir / f"img_{i}.png")
        save_labels(labels, str(label_dir / f"img_{i}.txt"))
    return img_dir, label_dir


class TestParser:

    def test_subcommand_required(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args([])

    def test_infer_defaults(self):
        args = build_parser().parse_args(["infer", "--weight", "2"])
        assert args.weight == 2.0
        assert args.func.__name__ == "cmd_infer"


class TestCommands:

    def test_mapping(self, tmp_path):
        img_dir, label_dir = write_dirs(tmp_path)
        csv_path = tmp_path / "mapping.csv"
        assert main(["mapping", "--img-dir", str(img_dir), "--label-dir", str(label_dir),
                     "--output-csv", str(csv_path)]) == 0
        assert csv_path.exists()

    def test_missing_model_dir(self, tmp_path):
        assert main(["infer", "--model-dir", str(tmp_path / "none"), "--csv", str(tmp_path / "x.csv")]) == 2

    @pytest.mark.slow
    def test_train_search_infer_evaluate(self, tmp_path):
        img_dir, label_dir = write_dirs(tmp_path)
        csv_path = tmp_path / "mapping.csv"
        main(["mapping", "--img-dir", str(img_dir), "--label-dir", str(label_dir), "--output-csv", str(csv_path)])

        config_path = tmp_path / "config.json"
        config_path.write_text(json.dumps({
            "num_classes": 2,
            "feature_groups": ["color", "position"],
            "num_rounds": 5,
            "sub_sample": 2,
            "pairwise_candidates": [0.0, 1.0],
            "connectivity": 4,
        }))
        model_dir = tmp_path / "model"

        assert main(["train", "--config", str(config_path), "--train-csv", str(csv_path),
                     "--val-csv", str(csv_path), "--output-dir", str(model_dir)]) == 0
        assert (model_dir / "pairwise.json").exists()

        assert main(["search", "--val-csv", str(csv_path), "--model-dir", str(model_dir)]) == 0
        assert main(["infer", "--csv", str(csv_path), "--model-dir", str(model_dir),
                     "--output-dir", str(tmp_path / "predictions")]) == 0
        assert (tmp_path / "predictions" / "img_0_labels.png").exists()

        reports = tmp_path / "reports"
        assert main(["evaluate", "--csv", str(csv_path), "--model-dir", str(model_dir),
                     "--output-dir", str(reports), "--metrics-csv", str(reports / "metrics.csv")]) == 0
        with open(reports / "crf_evaluation.json") as f:
            assert json.load(f)["accuracy"] > 0.9
