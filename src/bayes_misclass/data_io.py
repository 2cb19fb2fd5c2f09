"""
Data I/O for real datasets.

Loads a CSV into the DataFrame layout expected by the fitters: one column per
variable, categorical variables coded 0..K-1, and missing values as NaN.

Example (the low birth weight study, smoking status self-reported):
    low,smoke,age,lwt
    0,0,19,182
    1,1,28,120
"""

import numpy as np
import pandas as pd
from pathlib import Path
from typing import Dict, List, Mapping, Optional, Tuple, Union


class DatasetLoader:
    """Load analysis datasets from CSV files."""

    @staticmethod
    def load_csv(
        filepath: Union[str, Path],
        columns: Optional[Mapping[str, str]] = None,
        recode: Optional[Mapping[str, Mapping]] = None,
        categorical: Optional[Mapping[str, int]] = None,
        dropna: Optional[List[str]] = None,
    ) -> Tuple[pd.DataFrame, Dict]:
        """Load a dataset from CSV.

        Args:
            filepath: Path to the CSV file
            columns: Mapping source column -> analysis name. If given, only these
                columns are kept
            recode: Mapping analysis column -> {source value: code}; unmapped
                values become missing
            categorical: Mapping analysis column -> number of categories K; codes
                are checked to lie in 0..K-1
            dropna: Columns whose missing rows are dropped entirely

        Returns:
            Tuple of (DataFrame, summary dict)
        """
        filepath = Path(filepath)
        if not filepath.exists():
            raise FileNotFoundError(f"Dataset not found: {filepath}")
        df = pd.read_csv(filepath)
        n_read = len(df)

        if columns is not None:
            missing = [c for c in columns if c not in df.columns]
            if missing:
                raise ValueError(f"CSV is missing columns: {missing}")
            df = df[list(columns)].rename(columns=dict(columns))

        for col, mapping in (recode or {}).items():
            if col not in df.columns:
                raise ValueError(f"Cannot recode unknown column '{col}'")
            df[col] = df[col].map(dict(mapping)).astype(float)

        for col, K in (categorical or {}).items():
            if col not in df.columns:
                raise ValueError(f"Unknown categorical column '{col}'")
            values = pd.to_numeric(df[col], errors='coerce')
            observed = values.dropna()
            bad = (observed != np.round(observed)) | (observed < 0) | (observed >= int(K))
            if bad.any():
                raise ValueError(
                    f"Column '{col}' must hold integer codes 0..{int(K) - 1}; "
                    f"found {sorted(observed[bad].unique().tolist())[:5]}"
                )
            df[col] = values.astype(float)

        if dropna:
            df = df.dropna(subset=list(dropna)).reset_index(drop=True)

        summary = {
            'n_read': n_read,
            'n_rows': len(df),
            'n_dropped': n_read - len(df),
            'missing_by_column': {c: int(df[c].isna().sum()) for c in df.columns},
        }
        return df, summary
