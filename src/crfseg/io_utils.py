"""
Input/Output utilities for images, ground truth labelings and mapping CSVs.
"""

import os
from pathlib import Path
from typing import Iterator, List, Optional, Tuple

import numpy as np
import pandas as pd
from PIL import Image

from crfseg.cste import CSVKeys, LabelInfo
from crfseg.logger import get_logger

log = get_logger("io_utils")


def load_image(img_path: str, normalize: bool = True) -> np.ndarray:
    """
    Load RGB image from file path.

    Args:
        img_path: Path to image file
        normalize: If True, normalize to [0, 1], else keep [0, 255]

    Returns:
        RGB image as numpy array
        - If normalize=True: shape (H, W, 3), dtype float32, range [0, 1]
        - If normalize=False: shape (H, W, 3), dtype uint8, range [0, 255]

    Raises:
        FileNotFoundError: If image path does not exist
        ValueError: If image cannot be loaded or converted to RGB
    """
    if not os.path.exists(img_path):
        raise FileNotFoundError(f"Image not found: {img_path}")

    try:
        img = Image.open(img_path).convert("RGB")
    except Exception as e:
        raise ValueError(f"Failed to load image {img_path}: {e}") from e

    img_array = np.array(img)

    if normalize:
        img_array = img_array.astype(np.float32) / 255.0
    else:
        img_array = img_array.astype(np.uint8)
    return img_array


def load_labels(label_path: str, void_label: int = LabelInfo.VOID_LABEL) -> np.ndarray:
    """
    Load a ground truth labeling.

    Two encodings are accepted:
    - Text (.txt): one row per line, space-delimited integers, -1 for void
    - Raster (.png/.tif): single-channel 8 or 16 bit image of class ids

    ! Raster pixels equal to void_label are mapped to -1
    ! 16-bit rasters store void as 65535 (i.e. -1 as uint16), also mapped to -1

    Returns:
        Labeling (H, W), dtype int32
    """
    if not os.path.exists(label_path):
        raise FileNotFoundError(f"Label file not found: {label_path}")

    suffix = Path(label_path).suffix.lower()
    if suffix in LabelInfo.TEXT_LABEL_EXT:
        labels = np.loadtxt(label_path, dtype=np.int32, ndmin=2)
    else:
        try:
            raster = np.array(Image.open(label_path))
        except Exception as e:
            raise ValueError(f"Failed to load labels {label_path}: {e}") from e
        if raster.ndim != 2:
            raise ValueError(
                f"Label raster {label_path} must be single-channel, got shape {raster.shape}"
            )
        labels = raster.astype(np.int32)
        # Pillow may read 16-bit rasters back as int32, match the value not the dtype
        labels[labels == np.iinfo(np.uint16).max] = -1

    labels[labels == void_label] = -1
    return labels


def save_labels(labels: np.ndarray, save_path: str) -> None:
    """
    Save a labeling to disk.

    .txt paths get space-delimited integers, anything else a 16-bit PNG
    where void (-1) is stored as 65535.
    """
    os.makedirs(os.path.dirname(save_path) or ".", exist_ok=True)

    if Path(save_path).suffix.lower() in LabelInfo.TEXT_LABEL_EXT:
        np.savetxt(save_path, labels, fmt="%d", delimiter=" ")
        return

    raster = np.where(labels < 0, np.iinfo(np.uint16).max, labels).astype(np.uint16)
    Image.fromarray(raster).save(save_path)


def list_dir_endwith(
    dir_path: str, suffixes: Optional[tuple] = LabelInfo.IMAGE_EXT
) -> List[str]:
    """
    List files in directory with specific suffixes.
    Args:
        dir_path: Directory path
        suffixes: Tuple of file extensions to filter by

    Returns:
        Sorted list of file paths matching the suffixes (given directory + filename)
    """
    if not os.path.isdir(dir_path):
        raise NotADirectoryError(f"Not a directory: {dir_path}")

    list_files_names = sorted(os.listdir(dir_path))
    list_selected_files = [
        f for f in list_files_names if os.path.splitext(f)[1].lower() in suffixes
    ]
    return [os.path.join(dir_path, f) for f in list_selected_files]


def get_filename_noext(path: str) -> str:
    """Return the file name without its extension from a given path.
    Example : '/path/to/file/image.jpg' -> 'image'
    """
    filename = os.path.basename(path)
    name, _ = os.path.splitext(filename)
    return name


def build_mapping_csv(
    img_dir: str,
    label_dir: str,
    output_csv_path: str,
    label_suffix: str = "",
) -> pd.DataFrame:
    """
    Build a CSV mapping images to their ground truth by basename.
    CSV columns: img_id, img_path, label_path

    Args:
        img_dir: Directory of images
        label_dir: Directory of labelings (.txt or raster)
        output_csv_path: Where to write the CSV
        label_suffix: Extra suffix of label basenames (e.g. '_m' for 'img_m.png')

    Returns:
        The mapping as a DataFrame
    """
    img_paths = list_dir_endwith(img_dir)
    label_exts = LabelInfo.TEXT_LABEL_EXT + LabelInfo.RASTER_LABEL_EXT
    label_by_id = {
        get_filename_noext(p): p for p in list_dir_endwith(label_dir, label_exts)
    }

    rows = []
    skipped = 0
    for img_path in img_paths:
        img_id = get_filename_noext(img_path)
        label_path = label_by_id.get(img_id + label_suffix)
        if label_path is None:
            skipped += 1
            log.warning(f"No label found for image {img_id}, skipping")
            continue
        rows.append({CSVKeys.IMAGE_ID: img_id, CSVKeys.IMAGE_PATH: img_path,
                     CSVKeys.LABEL_PATH: label_path})

    df = pd.DataFrame(rows, columns=[CSVKeys.IMAGE_ID, CSVKeys.IMAGE_PATH, CSVKeys.LABEL_PATH])

    output_csv_path = Path(output_csv_path)
    output_csv_path.parent.mkdir(parents=True, exist_ok=True)
    df.to_csv(output_csv_path, index=False)

    log.info(
        f"Dataset mapping completed: {len(rows)}/{len(img_paths)} files processed successfully "
        f"({skipped} skipped)"
    )
    return df


def iter_labeled_images(
    mapping_csv_path: str, void_label: int = LabelInfo.VOID_LABEL
) -> Iterator[Tuple[str, np.ndarray, np.ndarray]]:
    """
    Yield (img_id, image, labels) for every row of a mapping CSV.

    Rows whose files cannot be read are logged and skipped.
    """
    df = pd.read_csv(mapping_csv_path)
    required_columns = {CSVKeys.IMAGE_ID, CSVKeys.IMAGE_PATH, CSVKeys.LABEL_PATH}
    if not required_columns.issubset(df.columns):
        raise ValueError(f"CSV must contain columns: {required_columns}")

    for _, row in df.iterrows():
        try:
            img = load_image(row[CSVKeys.IMAGE_PATH])
            labels = load_labels(row[CSVKeys.LABEL_PATH], void_label=void_label)
        except (FileNotFoundError, ValueError) as e:
            log.warning(f"Skipping {row[CSVKeys.IMAGE_ID]}: {e}")
            continue
        yield str(row[CSVKeys.IMAGE_ID]), img, labels
