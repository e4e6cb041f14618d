import logging

import numpy as np
import pandas as pd
from scipy.cluster.hierarchy import cut_tree, linkage


logger = logging.getLogger(__name__)


class HabitatClusterer:
    """Group survey sites into habitat classes from their cover percentages"""

    def __init__(self, cover_columns: list[str], method: str = 'ward'):
        self.cover_columns = list(cover_columns)
        self.method = method

    def cluster(self, cover_table: pd.DataFrame, n_clusters: int) -> pd.Series:
        """
        Cut a hierarchical clustering of the cover table into n_clusters classes

        :param pd.DataFrame cover_table: One row per site, one cover percentage column per component
        :param int n_clusters: Desired number of habitat classes
        :returns pd.Series: Integer class 1..n_clusters per site, aligned to cover_table
        """

        cover = cover_table[self.cover_columns].to_numpy(dtype=float)
        if np.isnan(cover).any():
            raise ValueError('Cover percentages contain missing values')
        if not 1 <= n_clusters <= len(cover):
            raise ValueError(f'Cannot cut {len(cover)} sites into {n_clusters} clusters')

        tree = linkage(cover, method=self.method)
        labels = cut_tree(tree, n_clusters=n_clusters).ravel() + 1
        logger.info(f'Clustered {len(cover)} sites into {n_clusters} habitat classes')
        return pd.Series(labels.astype(int), index=cover_table.index, name='habitat_class')

    def cluster_summary(self, cover_table: pd.DataFrame, labels: pd.Series) -> pd.DataFrame:
        """Mean cover and site count per habitat class"""

        summary = cover_table[self.cover_columns].groupby(labels).mean()
        summary.insert(0, 'n_sites', labels.value_counts().sort_index())
        summary.index.name = labels.name
        return summary.reset_index()
