"""Dataset loading and batching.

Datasets bundled in the dataset directory (``.csv``, ``.json`` records or
``.parquet``) are read into pandas DataFrames, optionally shuffled and split,
and fed to the model in fixed-size batches by ``DataLoader``. Scored rows can
be written back in any of the same formats with ``save_dataset``.
"""

import uuid
from datetime import datetime
from pathlib import Path
from typing import Iterator, List, Optional, Tuple, Union

import numpy as np
import pandas as pd
import structlog

logger = structlog.get_logger("model_serving.datasets")

SUPPORTED_EXTENSIONS = (".csv", ".json", ".parquet")

# Model artifacts live in the same directory and are never datasets
RESERVED_FILES = ("model.json", "metadata.json")

PathLike = Union[str, Path]


class DatasetError(ValueError):
    """Dataset file could not be read or has an unexpected layout."""


def load_dataset(path: PathLike) -> pd.DataFrame:
    """Load a dataset file into a DataFrame, dispatching on the extension."""
    path = Path(path)
    suffix = path.suffix.lower()
    if suffix not in SUPPORTED_EXTENSIONS:
        raise DatasetError(f"Unsupported dataset format {suffix!r} for {path.name}")

    try:
        if suffix == ".csv":
            df = pd.read_csv(path)
        elif suffix == ".json":
            df = pd.read_json(path, orient="records")
        else:
            df = pd.read_parquet(path)
    except (OSError, ValueError, ImportError) as e:
        raise DatasetError(f"Failed to read dataset {path.name}: {e}") from e

    logger.info("Dataset loaded", dataset=path.name, rows=len(df), columns=len(df.columns))
    return df


def save_dataset(df: pd.DataFrame, path: PathLike) -> Path:
    """Write a DataFrame to ``path``, dispatching on the extension.

    Index labels are not written; keep them as a column if they matter.
    """
    path = Path(path)
    suffix = path.suffix.lower()
    if suffix not in SUPPORTED_EXTENSIONS:
        raise DatasetError(f"Unsupported dataset format {suffix!r} for {path.name}")

    try:
        if suffix == ".csv":
            df.to_csv(path, index=False)
        elif suffix == ".json":
            df.to_json(path, orient="records")
        else:
            df.to_parquet(path, index=False)
    except (OSError, ValueError, ImportError) as e:
        raise DatasetError(f"Failed to write dataset {path.name}: {e}") from e

    logger.info("Dataset saved", dataset=path.name, rows=len(df), columns=len(df.columns))
    return path


def list_datasets(directory: PathLike) -> List[str]:
    """Names of the supported dataset files directly inside ``directory``."""
    directory = Path(directory)
    if not directory.is_dir():
        return []
    return sorted(
        p.name for p in directory.iterdir()
        if p.is_file()
        and p.suffix.lower() in SUPPORTED_EXTENSIONS
        and p.name not in RESERVED_FILES
    )


def resolve_dataset(directory: PathLike, name: str) -> Optional[Path]:
    """Resolve ``name`` to a dataset file inside ``directory``.

    Returns ``None`` for names that escape the directory or are not supported
    dataset files.
    """
    if Path(name).name != name:
        return None
    if name not in list_datasets(directory):
        return None
    return Path(directory) / name


def resolve_output(directory: PathLike, name: str) -> Optional[Path]:
    """Resolve ``name`` to a new dataset file inside ``directory``.

    Returns ``None`` for names that escape the directory, have an unsupported
    extension, clash with model artifacts or already exist.
    """
    if Path(name).name != name or name in RESERVED_FILES:
        return None
    path = Path(directory) / name
    if path.suffix.lower() not in SUPPORTED_EXTENSIONS or path.exists():
        return None
    return path


def split_features_target(df: pd.DataFrame, target_column: str) -> Tuple[pd.DataFrame, pd.Series]:
    """Split a frame into features ``X`` (DataFrame) and target ``y`` (Series)."""
    if target_column not in df.columns:
        raise DatasetError(f"Target column {target_column!r} not in dataset")
    y = df[target_column]
    X = df.drop(columns=[target_column])
    return X, y


def train_test_split(
    X: pd.DataFrame,
    y: pd.Series,
    test_ratio: float,
) -> Tuple[pd.DataFrame, pd.DataFrame, pd.Series, pd.Series]:
    """Split into train/test sets.

    The test set is the last ``round(n * test_ratio)`` rows; rows are not
    reshuffled, so shuffle first if the file is ordered.
    """
    if not 0.0 <= test_ratio <= 1.0:
        raise DatasetError("test_ratio must be between 0 and 1")
    if len(X) != len(y):
        raise DatasetError("X and y have different lengths")

    n = len(X)
    test_size = int(round(n * test_ratio))
    train_size = n - test_size
    return (
        X.iloc[:train_size],
        X.iloc[train_size:],
        y.iloc[:train_size],
        y.iloc[train_size:],
    )


def shuffle(df: pd.DataFrame, seed: Optional[int] = None) -> pd.DataFrame:
    """Return a row-shuffled copy.

    Index labels travel with their rows so results can be traced back to the
    source file.
    """
    return df.sample(frac=1.0, random_state=seed)


class DataLoader:
    """Iterate over a DataFrame in batches of ``batch_size`` rows.

    Each iteration yields ``(indices, batch)`` where ``indices`` are row
    positions in the original frame, so callers can re-associate results. A
    new pass reshuffles when ``shuffle`` is set. ``session_id`` and
    ``created_at`` identify the loader in logs.
    """

    def __init__(
        self,
        frame: pd.DataFrame,
        batch_size: int,
        shuffle: bool = False,
        seed: Optional[int] = None,
    ):
        if batch_size <= 0:
            raise ValueError("batch_size must be positive")
        self.frame = frame
        self.batch_size = batch_size
        self.shuffle = shuffle
        self._rng = np.random.default_rng(seed)
        self.session_id = uuid.uuid4()
        self.created_at = datetime.now().strftime("%d-%m-%y-%H")

    def __len__(self) -> int:
        return -(-len(self.frame) // self.batch_size)

    def __iter__(self) -> Iterator[Tuple[np.ndarray, pd.DataFrame]]:
        indices = np.arange(len(self.frame))
        if self.shuffle:
            self._rng.shuffle(indices)
        for start in range(0, len(indices), self.batch_size):
            batch_idx = indices[start:start + self.batch_size]
            yield batch_idx, self.frame.iloc[batch_idx]
