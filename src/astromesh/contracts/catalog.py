"""Catalog stage contract.

Structural checks only: the measurements themselves are the builder's
responsibility.
"""

import numpy as np
import pandas as pd

from astromesh.contracts.base import require


def _check_table(table: pd.DataFrame, labels: np.ndarray, id_column: str, count: int) -> None:
    require(
        isinstance(table, pd.DataFrame),
        f"Catalog contract violated: output is {type(table)}, expected DataFrame"
    )
    require(
        len(table) == count,
        f"Catalog contract violated: {len(table)} rows for {count} labels"
    )
    if count == 0:
        return
    for column in (id_column, "area", "area_with_blank"):
        require(column in table.columns,
                f"Catalog contract violated: missing required column '{column}'")
    require(
        bool(np.all(table[id_column].to_numpy() == np.arange(1, count + 1))),
        f"Catalog contract violated: '{id_column}' is not 1..{count} in order"
    )
    pixel_counts = np.bincount(labels[labels > 0].ravel(), minlength=count + 1)[1:count + 1]
    require(
        bool(np.all(table["area_with_blank"].to_numpy() == pixel_counts)),
        f"Catalog contract violated: '{id_column}' areas do not match the label pixel counts"
    )


def assert_catalog(catalog, segmentation) -> None:
    """Rows match labels one to one and areas match pixel counts."""
    _check_table(catalog.objects, np.asarray(segmentation.objects), "obj_id",
                 segmentation.num_objects)
    if catalog.clumps is not None:
        _check_table(catalog.clumps, np.asarray(segmentation.clumps), "clump_id",
                     segmentation.num_clumps)
