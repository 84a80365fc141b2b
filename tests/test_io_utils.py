import numpy as np
import pandas as pd
import pytest
from PIL import Image

from crfseg.cste import CSVKeys
from crfseg.io_utils import build_mapping_csv, iter_labeled_images, load_image, load_labels, save_labels


def write_dataset(root, n=2, size=(6, 5)):
    img_dir = root / "images"
    label_dir = root / "labels"
    img_dir.mkdir()
    label_dir.mkdir()
    for i in range(n):
        pixels = np.full(size + (3,), 40 * i, dtype=np.uint8)
        Image.fromarray(pixels).save(img_dir / f"img_{i}.png")
        labels = np.zeros(size, dtype=np.int32)
        labels[0, 0] = -1
        labels[:, -1] = 1
        save_labels(labels, str(label_dir / f"img_{i}.txt"))
    return img_dir, label_dir


class TestLabels:

    def test_text_round_trip(self, tmp_path):
        labels = np.array([[0, 1, -1], [2, 2, 0]])
        path = tmp_path / "gt.txt"
        save_labels(labels, str(path))
        np.testing.assert_array_equal(load_labels(str(path)), labels)

    def test_raster_round_trip_keeps_void(self, tmp_path):
        labels = np.array([[0, 1, -1], [20, 2, 0]])
        path = tmp_path / "gt.png"
        save_labels(labels, str(path))
        np.testing.assert_array_equal(load_labels(str(path)), labels)

    def test_custom_void_mapped(self, tmp_path):
        path = tmp_path / "gt.txt"
        save_labels(np.array([[0, 255]]), str(path))
        np.testing.assert_array_equal(load_labels(str(path), void_label=255), [[0, -1]])

    def test_single_row_text(self, tmp_path):
        path = tmp_path / "row.txt"
        path.write_text("0 1 1\n")
        assert load_labels(str(path)).shape == (1, 3)

    def test_missing(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_labels(str(tmp_path / "absent.txt"))


class TestImages:

    def test_load_normalized(self, tmp_path):
        path = tmp_path / "img.png"
        Image.fromarray(np.full((2, 3, 3), 255, dtype=np.uint8)).save(path)
        img = load_image(str(path))
        assert img.shape == (2, 3, 3) and img.dtype == np.float32
        assert np.allclose(img, 1.0)

    def test_load_missing(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_image(str(tmp_path / "absent.png"))


class TestMapping:

    def test_build_and_iterate(self, tmp_path):
        img_dir, label_dir = write_dataset(tmp_path)
        # An image without labels is left out
        Image.fromarray(np.zeros((2, 2, 3), dtype=np.uint8)).save(img_dir / "orphan.png")

        csv_path = tmp_path / "mapping.csv"
        df = build_mapping_csv(str(img_dir), str(label_dir), str(csv_path))

        assert list(df[CSVKeys.IMAGE_ID]) == ["img_0", "img_1"]
        assert pd.read_csv(csv_path).shape == (2, 3)

        items = list(iter_labeled_images(str(csv_path)))
        assert [img_id for img_id, _, _ in items] == ["img_0", "img_1"]
        _, img, labels = items[0]
        assert img.shape[:2] == labels.shape == (6, 5)
        assert labels[0, 0] == -1

    def test_unreadable_rows_skipped(self, tmp_path):
        img_dir, label_dir = write_dataset(tmp_path)
        csv_path = tmp_path / "mapping.csv"
        build_mapping_csv(str(img_dir), str(label_dir), str(csv_path))
        (label_dir / "img_0.txt").unlink()
        assert [img_id for img_id, _, _ in iter_labeled_images(str(csv_path))] == ["img_1"]
