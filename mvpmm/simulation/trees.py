"""
Tree simulation

Generators for the phylogenies used in the MV-PMM simulation study: birth-death
trees, trees grown under the Price niche model, and two-clade trees stitched
onto a short ("balanced") or long ("early split") backbone.
"""
import logging
import string

import numpy as np
import pandas as pd
from ete3 import Tree

logger = logging.getLogger(__name__)


def _rng(rng):
    return rng if isinstance(rng, np.random.Generator) else np.random.default_rng(rng)


def node_depths(tree):
    """
    Distance from the root to every node of ``tree``. The root's own ``dist``
    (a stem edge) is ignored.
    """
    depths = {}
    for node in tree.traverse("preorder"):
        depths[node] = 0.0 if node is tree else depths[node.up] + node.dist
    return depths


def tree_height(tree):
    """Largest root-to-tip distance (ape ``max(nodeHeights(tree))``)."""
    depths = node_depths(tree)
    return max(depths[leaf] for leaf in tree.iter_leaves())


def rescale_tree(tree, height):
    """
    Rescales all branch lengths in place so the tree height equals ``height``.

    Returns:
        The same tree, for chaining.
    """
    current = tree_height(tree)
    if current <= 0:
        raise ValueError("Cannot rescale a tree of height zero.")
    factor = height / current
    for node in tree.traverse():
        if node is not tree:
            node.dist = node.dist * factor
    return tree


def relabel_tips(tree, prefix='t', start=1, order=None):
    """
    Renames tips to ``prefix1, prefix2, ...``.

    Args:
        tree: Tree whose leaves are renamed in place.
        prefix: Label prefix.
        start: Number of the first label.
        order: Current tip names in the order they should be numbered.
               Defaults to the tree's leaf traversal order.

    Returns:
        dict: Mapping from old to new tip name.
    """
    leaves = {leaf.name: leaf for leaf in tree.iter_leaves()}
    if order is None:
        order = [leaf.name for leaf in tree.iter_leaves()]
    if sorted(order) != sorted(leaves):
        raise ValueError("'order' must list every tip of the tree exactly once.")

    mapping = {}
    for i, name in enumerate(order):
        new_name = f"{prefix}{start + i}"
        mapping[name] = new_name
    for name, leaf in leaves.items():
        leaf.name = mapping[name]
    return mapping


def _collapse_root(tree):
    # Drop single-child nodes at the base left behind by pruning
    while len(tree.children) == 1:
        child = tree.children[0]
        child.detach()
        tree = child
    tree.dist = 0.0
    return tree


def simulate_bd_tree(n, birth=1.0, death=0.0, rng=None, prefix='s'):
    """
    Simulates a birth-death tree until it holds ``n`` extant taxa.

    The process starts from two lineages at the root. When the n-th lineage
    appears the tips are extended by one further waiting time, so no tip has a
    zero-length branch. Extinct lineages are pruned; if every lineage dies the
    simulation restarts.

    Args:
        n (int): Number of extant taxa.
        birth (float): Speciation rate.
        death (float): Extinction rate.
        rng: numpy Generator or seed.
        prefix (str): Tip label prefix. Tips are numbered in order of origin.

    Returns:
        ete3.Tree: Ultrametric tree with ``n`` tips.
    """
    if n < 2:
        raise ValueError("A birth-death tree needs at least two taxa.")
    if birth <= 0 or death < 0:
        raise ValueError("Birth rate must be positive and death rate non-negative.")
    rng = _rng(rng)
    total_rate = birth + death

    attempts = 0
    while True:
        attempts += 1
        tree = Tree()
        tree.dist = 0.0
        start = {}
        alive = []
        for _ in range(2):
            child = tree.add_child(dist=0.0)
            start[child] = 0.0
            alive.append(child)

        t = 0.0
        while 0 < len(alive) < n:
            t += rng.exponential(1.0 / (len(alive) * total_rate))
            lineage = alive.pop(int(rng.integers(len(alive))))
            lineage.dist = t - start[lineage]
            if rng.random() < birth / total_rate:
                for _ in range(2):
                    child = lineage.add_child(dist=0.0)
                    start[child] = t
                    alive.append(child)

        if not alive:
            logger.debug("All lineages went extinct; restarting birth-death simulation.")
            continue

        t += rng.exponential(1.0 / (len(alive) * total_rate))
        for lineage in alive:
            lineage.dist = t - start[lineage]

        for i, lineage in enumerate(sorted(alive, key=lambda node: start[node])):
            lineage.name = f"{prefix}{i + 1}"
        if death > 0:
            tree.prune(alive, preserve_branch_length=True)
            tree = _collapse_root(tree)
        logger.debug("Birth-death tree with %d taxa after %d attempt(s).", n, attempts)
        return tree


def simulate_price_tree(n, sigma, rng=None, prefix='s'):
    """
    Grows a tree under the Price niche model.

    One new tip is added per time step. Its niche state is drawn from
    ``MVN(0, sigma)`` and it attaches to the existing tip whose state is
    closest in Euclidean distance (niche conservatism). All states are drawn
    up front; this gives the same result as drawing them one step at a time.

    Args:
        n (int): Number of tips.
        sigma: Niche covariance matrix.
        rng: numpy Generator or seed.
        prefix (str): Tip label prefix; tips are numbered in order of origin.

    Returns:
        tuple: (states DataFrame indexed by tip name, ete3.Tree)
    """
    if n < 2:
        raise ValueError("A Price tree needs at least two taxa.")
    rng = _rng(rng)
    sigma = np.asarray(sigma, dtype=float)
    states = rng.multivariate_normal(np.zeros(sigma.shape[0]), sigma, size=n)

    tree = Tree(name=f"{prefix}1")
    tree.dist = 0.0
    tips = [tree]
    for i in range(1, n):
        for leaf in tips:
            leaf.dist += 1.0
        distances = np.linalg.norm(states[:i] - states[i], axis=1)
        closest = int(np.argmin(distances))

        # The closest tip becomes an internal node carrying itself and the newcomer
        old = tips[closest]
        old_name = old.name
        old.name = ""
        tips[closest] = old.add_child(name=old_name, dist=0.0)
        tips.append(old.add_child(name=f"{prefix}{i + 1}", dist=0.0))

    for leaf in tips:
        leaf.dist += 1.0
    tree.dist = 0.0

    names = [f"{prefix}{i + 1}" for i in range(n)]
    columns = [f"niche{j + 1}" for j in range(states.shape[1])]
    return pd.DataFrame(states, index=names, columns=columns), tree


def bind_clades(clades, backbone_height, clade_height=0.9):
    """
    Stitches clades onto the tips of a star backbone.

    Each clade is copied, rescaled to ``clade_height`` and attached with its
    root exactly at a backbone tip (ape ``bind.tree(position = 0)``), so the
    resulting tree height is ``backbone_height + clade_height``.

    Args:
        clades (list): Trees to attach; tip names must be unique across clades.
        backbone_height (float): Length of each backbone branch.
        clade_height (float): Height every clade is rescaled to.

    Returns:
        ete3.Tree
    """
    names = [name for clade in clades for name in clade.get_leaf_names()]
    if len(names) != len(set(names)):
        raise ValueError("Tip names must be unique across clades before binding.")

    tree = Tree()
    tree.dist = 0.0
    for clade in clades:
        sub = rescale_tree(clade.copy(), clade_height)
        sub.dist = backbone_height
        tree.add_child(sub)
    return tree


class TreeReplicate:
    """
    Trees simulated for one replicate: the same pair of clades bound to each
    backbone, plus the niche states when the clades came from the Price model.
    """
    def __init__(self, replicate, trees, clades, founders, niches=None):
        self.replicate = replicate
        self.trees = trees # {tree_type: ete3.Tree}
        self.clades = clades # pandas Series: tip name -> clade label
        self.founders = founders # first tip of every clade
        self.niches = niches # DataFrame indexed by tip name, or None

    def __repr__(self):
        return f"TreeReplicate(replicate={self.replicate}, tree_types={list(self.trees)})"


def simulate_tree_replicates(config, rng=None):
    """
    Simulates ``config.tree_replicates`` replicates of two-clade trees.

    For every replicate ``config.n_clades`` clades of ``config.n_taxa_per_clade``
    tips are grown with the configured generator, tips are renamed
    ``t1..tN`` clade by clade (in order of origin, so the founder of each clade
    comes first), and the clades are bound onto each backbone height in
    ``config.backbone_heights``.

    Returns:
        list[TreeReplicate]
    """
    rng = _rng(rng if rng is not None else config.seed)
    n = config.n_taxa_per_clade
    replicates = []
    for rep in range(1, config.tree_replicates + 1):
        clades = []
        niche_tables = []
        clade_labels = {}
        founders = []
        for j in range(config.n_clades):
            if config.tree_generator == 'price':
                niches, clade = simulate_price_tree(n, config.price_sigma, rng)
            elif config.tree_generator == 'bd':
                clade = simulate_bd_tree(n, config.birth_rate, config.death_rate, rng)
                niches = None
            else:
                raise ValueError(f"Unknown tree generator: {config.tree_generator}")

            order = [f"s{i + 1}" for i in range(n)]
            mapping = relabel_tips(clade, prefix=config.tip_prefix, start=j * n + 1, order=order)
            label = string.ascii_uppercase[j]
            for new_name in mapping.values():
                clade_labels[new_name] = label
            founders.append(mapping[order[0]])
            if niches is not None:
                niche_tables.append(niches.rename(index=mapping))
            clades.append(clade)

        trees = {
            tree_type: bind_clades(clades, height, config.clade_height)
            for tree_type, height in config.backbone_heights.items()
        }
        niches = pd.concat(niche_tables) if niche_tables else None
        replicates.append(TreeReplicate(rep, trees, pd.Series(clade_labels, name='clade'), founders, niches))
        logger.info("Simulated tree replicate %d (%s generator, %d taxa).",
                    rep, config.tree_generator, n * config.n_clades)
    return replicates
