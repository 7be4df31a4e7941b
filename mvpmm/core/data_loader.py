import logging
import os

import pandas as pd
from ete3 import Tree

from ..core.config import DefaultConfig

logger = logging.getLogger(__name__)


class DataLoader:
    """
    Handles loading, validation and saving of phylogenetic trees, trait
    tables and model fits.
    """
    def __init__(self, config=None):
        """
        Initializes the DataLoader with a configuration object.

        Args:
            config: A configuration object. If None, DefaultConfig is used.
        """
        self.config = config if config is not None else DefaultConfig()
        self.tree = None
        self.traits = None

    def load_tree(self, file_path: str, newick_format: int = 1):
        """
        Loads a phylogenetic tree from a Newick file.

        Args:
            file_path (str): The path to the tree file.
            newick_format (int): ete3 Newick flavour. Defaults to 1 (branch
                                 lengths plus internal node names).

        Returns:
            ete3.Tree

        Raises:
            FileNotFoundError: If the tree file does not exist.
        """
        if not os.path.exists(file_path):
            raise FileNotFoundError(f"Tree file not found at {file_path}")
        self.tree = Tree(file_path, format=newick_format)
        logger.info("Tree loaded from %s: %d tips.", file_path, len(self.tree))
        return self.tree

    def load_traits(self, file_path: str, taxon_column: str = 'animal', **kwargs):
        """
        Loads a trait table (one row per taxon) from a CSV file.

        Args:
            file_path (str): The path to the CSV file.
            taxon_column (str): Column holding taxon names; renamed to
                                ``animal`` if different.
            **kwargs: Passed to ``pandas.read_csv``.

        Returns:
            pandas.DataFrame

        Raises:
            FileNotFoundError: If the file does not exist.
            ValueError: If the taxon column is missing.
        """
        traits = pd.read_csv(file_path, **kwargs)
        if taxon_column not in traits.columns:
            raise ValueError(f"Taxon column '{taxon_column}' not found in {file_path}.")
        traits = traits.rename(columns={taxon_column: 'animal'})
        traits['animal'] = traits['animal'].astype(str)
        if 'obs' not in traits.columns:
            traits['obs'] = range(1, len(traits) + 1)
        self.traits = traits
        logger.info("Traits loaded from %s: %d taxa, columns %s.", file_path, len(traits), list(traits.columns))
        return traits

    def validate_data(self, tree=None, traits=None, trait_columns=None):
        """
        Checks that the tree and the trait table describe the same taxa and
        that the trait columns are complete and numeric.

        Args:
            tree: The tree to validate. If None, uses self.tree.
            traits: The trait table to validate. If None, uses self.traits.
            trait_columns (list): Columns to check. Defaults to ``config.traits``.

        Returns:
            bool: True if data is valid.

        Raises:
            ValueError: If data are missing or inconsistent.
        """
        tree = tree if tree is not None else self.tree
        traits = traits if traits is not None else self.traits
        if tree is None or traits is None:
            raise ValueError("Tree and/or trait data have not been loaded yet.")
        trait_columns = list(trait_columns or self.config.traits)

        tree_taxa = set(tree.get_leaf_names())
        data_taxa = list(traits['animal'])
        if len(set(data_taxa)) != len(data_taxa):
            raise ValueError("Taxa appear more than once in the trait table.")
        missing_in_tree = set(data_taxa) - tree_taxa
        missing_in_data = tree_taxa - set(data_taxa)
        if missing_in_tree or missing_in_data:
            raise ValueError(f"Taxa in trait table but not in tree: {sorted(missing_in_tree)}; "
                             f"in tree but not in trait table: {sorted(missing_in_data)}")

        absent = [c for c in trait_columns if c not in traits.columns]
        if absent:
            raise ValueError(f"Trait columns not found in data: {absent}")
        for column in trait_columns:
            if not pd.api.types.is_numeric_dtype(traits[column]):
                raise ValueError(f"Trait column '{column}' is not numeric.")
            if traits[column].isna().any():
                raise ValueError(f"Trait column '{column}' has missing values.")
        logger.debug("Data validation passed for %d taxa.", len(data_taxa))
        return True

    def save_tree(self, tree, file_path: str):
        tree.write(format=1, outfile=file_path)
        return file_path

    def save_traits(self, traits, file_path: str):
        traits.to_csv(file_path, index=False)
        return file_path

    def save_fit(self, pmm, file_path: str):
        """Writes a fitted MultivariatePMM to NetCDF."""
        return pmm.save(file_path)

    def load_fit(self, file_path: str):
        """Reads a MultivariatePMM fit written by ``save_fit``."""
        from ..methods.bayesian import MultivariatePMM

        if not os.path.exists(file_path):
            raise FileNotFoundError(f"Fit file not found at {file_path}")
        return MultivariatePMM.load(file_path, self.config)
