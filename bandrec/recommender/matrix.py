"""Neighbourhood matrix construction from the collection graph.

This module loads the part of the graph relevant to one user into a sparse
collector-item matrix: one row per neighbour (a collector sharing items with
the user) and one column per item linked to any neighbour.
"""

import logging
from typing import Dict, Iterable, Tuple

import numpy as np
import pandas as pd
from scipy.sparse import csr_matrix

from bandrec.crawler.store import MAX_SQL_VARIABLES, GraphStore

# Configure module logger
logger = logging.getLogger(__name__)

# Both edge relations count as "collected": collects is complete, collected_by
# is sampled, and together they give the best known picture of a collector.
NEIGHBOURHOOD_EDGES_SQL = """
with edges as (
    select fan_id, item_id from collects
    union
    select fan_id, item_id from collected_by
),
neighbours as (
    select fan_id from edges
    where item_id in (select item_id from collects where fan_id = :fan_id)
      and fan_id != :fan_id
    group by fan_id
    having count(*) >= :min_shared
)
select fan_id, item_id from edges
where fan_id in (select fan_id from neighbours)
"""

ITEM_DETAILS_SQL = """
select item_id, item_title, item_url, band_name, also_collected_count
from item where item_id in ({placeholders})
"""


def load_neighbourhood_matrix(
    store: GraphStore,
    fan_id: int,
    min_shared: int = 1,
) -> Tuple[csr_matrix, Dict[int, int], Dict[int, int]]:
    """Build the binary neighbour-item matrix for a user.

    Args:
        store: Graph store to read from.
        fan_id: The user whose neighbourhood is loaded.
        min_shared: Items a collector must share with the user to count as a
            neighbour.

    Returns:
        A tuple containing:
            - Sparse CSR matrix of shape (n_neighbours, n_items) with a 1
              wherever a neighbour is linked to an item by either edge
            - Dictionary mapping fan_id to matrix row index
            - Dictionary mapping item_id to matrix column index

    Example:
        >>> matrix, fan_map, item_map = load_neighbourhood_matrix(store, 42)
        >>> print(f"{len(fan_map)} neighbours, {len(item_map)} items")
    """
    with store.connect() as conn:
        df = pd.read_sql_query(
            NEIGHBOURHOOD_EDGES_SQL,
            conn,
            params={"fan_id": fan_id, "min_shared": min_shared},
        )

    if df.empty:
        logger.info(f"No neighbours found for fan {fan_id}")
        return csr_matrix((0, 0), dtype=np.float32), {}, {}

    unique_fans = sorted(df["fan_id"].unique())
    unique_items = sorted(df["item_id"].unique())

    fan_id_to_idx = {int(fid): idx for idx, fid in enumerate(unique_fans)}
    item_id_to_idx = {int(iid): idx for idx, iid in enumerate(unique_items)}

    row_indices = df["fan_id"].map(fan_id_to_idx).values
    col_indices = df["item_id"].map(item_id_to_idx).values
    data = np.ones(len(df), dtype=np.float32)

    matrix = csr_matrix(
        (data, (row_indices, col_indices)),
        shape=(len(unique_fans), len(unique_items)),
        dtype=np.float32,
    )
    # The union already removed duplicate edges; clamp anyway to stay binary
    matrix.data = np.minimum(matrix.data, 1.0)

    logger.info(
        f"Neighbourhood of fan {fan_id}: {matrix.shape[0]} collectors, "
        f"{matrix.shape[1]} items, {matrix.nnz} edges"
    )
    return matrix, fan_id_to_idx, item_id_to_idx


def load_item_details(store: GraphStore, item_ids: Iterable[int]) -> pd.DataFrame:
    """Load display fields and popularity for the given items.

    Returns:
        DataFrame indexed by item_id with item_title, item_url, band_name and
        also_collected_count columns.
    """
    ids = [int(item_id) for item_id in item_ids]
    frames = []
    with store.connect() as conn:
        for start in range(0, len(ids), MAX_SQL_VARIABLES):
            chunk = ids[start:start + MAX_SQL_VARIABLES]
            query = ITEM_DETAILS_SQL.format(placeholders=",".join("?" * len(chunk)))
            frames.append(pd.read_sql_query(query, conn, params=chunk))

    columns = ["item_id", "item_title", "item_url", "band_name", "also_collected_count"]
    if not frames:
        return pd.DataFrame(columns=columns).set_index("item_id")
    return pd.concat(frames, ignore_index=True).set_index("item_id")
