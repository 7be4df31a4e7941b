import logging
import os

import numpy as np
import plotly.express as px
import plotly.graph_objects as go
from plotly.subplots import make_subplots
from scipy import stats

from ..core.config import DefaultConfig
from ..simulation.trees import node_depths

logger = logging.getLogger(__name__)

BLUES = ['#c6dbef', '#6baed6', '#2171b5', '#08306b']


def tree_layout(tree):
    """
    Rectangular layout coordinates: x is the depth from the root, tips are
    spaced one unit apart on y and internal nodes sit midway between their
    children.
    """
    x = node_depths(tree)
    y = {}
    for i, leaf in enumerate(tree.iter_leaves()):
        y[leaf] = float(i)
    for node in tree.traverse("postorder"):
        if not node.is_leaf():
            y[node] = float(np.mean([y[c] for c in node.children]))
    return x, y


class InteractiveVisualizer:
    """
    Handles interactive visualizations of simulated data and model fits
    using Plotly.
    """
    def __init__(self, config=None):
        self.config = config if config is not None else DefaultConfig()

    def save_figure(self, fig, name, directory=None):
        """
        Writes ``fig`` to ``directory`` (default: the configured output
        directory) in the configured format.

        Returns:
            str: Path of the written file, or None if saving is disabled.
        """
        if not self.config.save_plots:
            return None
        directory = directory or self.config.output_directory
        os.makedirs(directory, exist_ok=True)
        path = os.path.join(directory, f"{name}.{self.config.plot_format}")
        if self.config.plot_format == 'html':
            fig.write_html(path)
        else:
            fig.write_image(path)
        logger.info("Saved figure %s", path)
        return path

    def plot_tree_with_traits(self, tree, data, traits=None, highlight=None, show_plot=False):
        """
        Plots the tree next to a scatter of two traits labelled by taxon.

        Args:
            tree: ete3 tree.
            data (DataFrame): Trait table with an ``animal`` column.
            traits (list): Two trait columns for the scatter (x, y).
            highlight (list): Taxa drawn in red, e.g. the founder of each clade.
        """
        traits = traits or [c for c in data.columns if c not in ('animal', 'obs', 'clade')][:2]
        highlight = set(highlight or [])
        x, y = tree_layout(tree)

        fig = make_subplots(rows=1, cols=2, subplot_titles=("Phylogeny", f"{traits[1]} vs {traits[0]}"))
        edge_x, edge_y = [], []
        for node in tree.traverse():
            if node.is_leaf():
                continue
            child_y = [y[c] for c in node.children]
            edge_x += [x[node], x[node], None]
            edge_y += [min(child_y), max(child_y), None]
            for child in node.children:
                edge_x += [x[node], x[child], None]
                edge_y += [y[child], y[child], None]
        fig.add_trace(go.Scatter(x=edge_x, y=edge_y, mode='lines', line=dict(color='black', width=1),
                                 hoverinfo='skip', showlegend=False), row=1, col=1)

        leaves = list(tree.iter_leaves())
        colors = ['red' if leaf.name in highlight else 'black' for leaf in leaves]
        fig.add_trace(go.Scatter(x=[x[l] for l in leaves], y=[y[l] for l in leaves], mode='text',
                                 text=[l.name for l in leaves], textposition='middle right',
                                 textfont=dict(color=colors, size=10), showlegend=False), row=1, col=1)

        point_colors = ['red' if t in highlight else 'black' for t in data['animal']]
        fig.add_trace(go.Scatter(x=data[traits[0]], y=data[traits[1]], mode='text', text=data['animal'],
                                 textfont=dict(color=point_colors, size=10), showlegend=False), row=1, col=2)
        fig.update_xaxes(title_text="Depth", row=1, col=1)
        fig.update_yaxes(showticklabels=False, row=1, col=1)
        fig.update_xaxes(title_text=traits[0], row=1, col=2)
        fig.update_yaxes(title_text=traits[1], row=1, col=2)
        fig.update_layout(template='simple_white')
        if show_plot:
            fig.show()
        return fig

    def plot_fit_comparison(self, comparison, show_plot=False):
        """
        Mean ± 2 sd of every parameter for several fits, nudged vertically
        so the fits can be told apart.

        Args:
            comparison (DataFrame): Output of ``diagnostics.compare_fits``.
        """
        fig = go.Figure()
        variables = list(dict.fromkeys(comparison['var']))
        position = {v: i for i, v in enumerate(variables)}
        palette = px.colors.qualitative.Plotly
        for i, (label, group) in enumerate(comparison.groupby('fit', sort=False)):
            offset = 0.1 * i
            ys = [position[v] + offset for v in group['var']]
            fig.add_trace(go.Scatter(
                x=group['mean'], y=ys, mode='markers', name=str(label),
                marker=dict(color=palette[i % len(palette)]),
                error_x=dict(type='data', array=2 * group['err'], visible=True),
            ))
        fig.update_yaxes(tickvals=list(range(len(variables))), ticktext=variables)
        fig.update_layout(template='simple_white', xaxis_title="x")
        if show_plot:
            fig.show()
        return fig

    def _interval_traces(self, intervals, order=None):
        xs = np.arange(1, len(intervals) + 1)
        data = intervals if order is None else intervals.iloc[order]
        traces = [
            go.Scatter(x=xs, y=data['m'], mode='markers', marker=dict(color=BLUES[1], size=8),
                       error_y=dict(type='data', symmetric=False, array=data['hh'] - data['m'],
                                    arrayminus=data['m'] - data['ll'], color=BLUES[1], thickness=1),
                       name='predicted'),
            go.Scatter(x=xs, y=data['m'], mode='markers', marker=dict(color=BLUES[1], size=1),
                       error_y=dict(type='data', symmetric=False, array=data['h'] - data['m'],
                                    arrayminus=data['m'] - data['l'], color=BLUES[2], thickness=3),
                       showlegend=False),
            go.Scatter(x=xs, y=data['y_obs'], mode='markers', marker=dict(color='black', size=6),
                       name='observed'),
        ]
        return traces

    def plot_ppc_intervals(self, checks, mode='conditional', title=None, show_plot=False):
        """
        Predictive intervals against observed values, one panel per trait.

        Args:
            checks (dict): Output of ``diagnostics.posterior_predictive_checks``.
            mode (str): Prediction mode to plot.
        """
        keys = [key for key in checks if key[0] == mode]
        fig = make_subplots(rows=len(keys), cols=1, subplot_titles=[f"Response: {t}" for _, t in keys])
        for row, key in enumerate(keys, start=1):
            for trace in self._interval_traces(checks[key]['intervals']):
                trace.showlegend = trace.showlegend is not False and row == 1
                fig.add_trace(trace, row=row, col=1)
        fig.update_layout(template='simple_white', title=title or f"PP-check: {mode}")
        if show_plot:
            fig.show()
        return fig

    def plot_loo_predictions(self, loo_results, show_plot=False):
        """
        LOO predictive intervals sorted by predicted median, with coverage in
        the subtitle of each panel.

        Args:
            loo_results (dict): trait -> output of ``diagnostics.loo_predictive_intervals``.
        """
        titles = []
        for trait, result in loo_results.items():
            n = len(result['intervals'])
            cov = result['coverage']
            titles.append(f"{trait} - Coverage: {100 * cov['cov90'] / n:.0f}% at 90th quantile, "
                          f"{100 * cov['cov50'] / n:.0f}% at 50th quantile")
        fig = make_subplots(rows=len(loo_results), cols=1, subplot_titles=titles)
        for row, result in enumerate(loo_results.values(), start=1):
            order = np.argsort(result['intervals']['m'].values)
            for trace in self._interval_traces(result['intervals'], order):
                trace.showlegend = trace.showlegend is not False and row == 1
                fig.add_trace(trace, row=row, col=1)
        fig.update_layout(template='simple_white', title="LOO-predictive checks")
        if show_plot:
            fig.show()
        return fig

    def plot_residual_qq(self, residuals, show_plot=False):
        """Normal QQ plot of mean predictive errors, one series per trait."""
        fig = go.Figure()
        for i, trait in enumerate(residuals.columns):
            (theoretical, ordered), _ = stats.probplot(residuals[trait].values, dist='norm')
            fig.add_trace(go.Scatter(x=theoretical, y=ordered, mode='markers', name=trait,
                                     marker=dict(color=BLUES[(2 * i + 1) % len(BLUES)])))
        fig.update_layout(template='simple_white', title="QQ plots", legend_title_text="Response",
                          xaxis_title="Theoretical quantiles", yaxis_title="Sample quantiles")
        if show_plot:
            fig.show()
        return fig

    def plot_recovery(self, draws, true_values, show_plot=False):
        """Posterior histograms of each parameter with its generating value."""
        labels = [label for label in true_values if label in draws.columns]
        cols = min(3, len(labels)) or 1
        rows = int(np.ceil(len(labels) / cols)) or 1
        fig = make_subplots(rows=rows, cols=cols, subplot_titles=labels)
        for i, label in enumerate(labels):
            row, col = i // cols + 1, i % cols + 1
            fig.add_trace(go.Histogram(x=draws[label], marker_color=BLUES[1], showlegend=False), row=row, col=col)
            fig.add_vline(x=true_values[label], line_color='black', row=row, col=col)
        fig.update_layout(template='simple_white', title="Recovery of simulation parameters")
        if show_plot:
            fig.show()
        return fig

    def plot_trace(self, idata, var_names, show_plot=False):
        """Trace plot of every chain for the given scalar parameters."""
        posterior = idata.posterior
        series = []
        for name in var_names:
            da = posterior[name]
            extra = [d for d in da.dims if d not in ('chain', 'draw')]
            if extra:
                flat = da.stack(element=extra)
                for idx in range(flat.sizes['element']):
                    labels = flat['element'].values[idx]
                    labels = labels if isinstance(labels, tuple) else (labels,)
                    series.append((f"{name}[{', '.join(str(v) for v in labels)}]", flat.isel(element=idx)))
            else:
                series.append((name, da))

        fig = make_subplots(rows=len(series), cols=1, subplot_titles=[label for label, _ in series],
                            shared_xaxes=True)
        palette = px.colors.qualitative.Plotly
        for row, (label, da) in enumerate(series, start=1):
            for c, chain in enumerate(da['chain'].values):
                fig.add_trace(go.Scatter(y=da.sel(chain=chain).values, mode='lines', line=dict(width=1,
                                         color=palette[c % len(palette)]),
                                         name=f"chain {chain}", showlegend=row == 1), row=row, col=1)
        fig.update_layout(template='simple_white', height=max(300, 180 * len(series)))
        if show_plot:
            fig.show()
        return fig
