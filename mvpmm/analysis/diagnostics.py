"""
Model validation

Convergence diagnostics, posterior-predictive and leave-one-out (PSIS)
predictive checks, residual analysis and recovery of simulation parameters for
fitted multivariate phylogenetic mixed models.
"""
import logging

import arviz as az
import numpy as np
import pandas as pd

logger = logging.getLogger(__name__)

INTERVAL_COLUMNS = ['ll', 'l', 'm', 'h', 'hh']


def convergence_diagnostics(idata, var_names=None, rhat_threshold=1.01, max_treedepth=10):
    """
    Summarises MCMC convergence.

    Args:
        idata: arviz.InferenceData with posterior and sample_stats groups.
        var_names: Variables to check (default: all posterior variables).
        rhat_threshold: R-hat above which a parameter is flagged.
        max_treedepth: Sampler tree depth limit.

    Returns:
        dict: ``table`` (r_hat, ess_bulk, ess_tail and ess ratio per
        parameter), ``flagged`` (parameters over the R-hat threshold),
        ``divergences``, ``treedepth_hits``, ``bfmi`` per chain and
        ``sampling_time`` in seconds when recorded by the sampler.
    """
    summary = az.summary(idata, var_names=var_names, kind='diagnostics')
    n_samples = idata.posterior.sizes['chain'] * idata.posterior.sizes['draw']
    table = summary[['r_hat', 'ess_bulk', 'ess_tail']].copy()
    table['ess_ratio'] = table['ess_bulk'] / n_samples
    flagged = list(table.index[table['r_hat'] > rhat_threshold])

    stats = idata.sample_stats
    divergences = int(stats['diverging'].sum()) if 'diverging' in stats else 0
    treedepth_hits = int((stats['tree_depth'] >= max_treedepth).sum()) if 'tree_depth' in stats else 0
    bfmi = np.asarray(az.bfmi(idata)) if 'energy' in stats else np.array([])

    result = {
        'table': table,
        'flagged': flagged,
        'divergences': divergences,
        'treedepth_hits': treedepth_hits,
        'bfmi': bfmi,
        'sampling_time': idata.posterior.attrs.get('sampling_time'),
    }
    if flagged:
        logger.warning("R-hat above %.3f for %s", rhat_threshold, flagged)
    if divergences:
        logger.warning("%d divergent transitions.", divergences)
    if bfmi.size and np.any(bfmi < 0.3):
        logger.warning("Low BFMI in chains %s.", list(np.where(bfmi < 0.3)[0]))
    return result


def predictive_intervals(draws, y_obs, probs=(0.05, 0.25, 0.5, 0.75, 0.95)):
    """
    Quantiles of predictive draws for each observation.

    Args:
        draws: array of shape (draws, n).
        y_obs: observed values, length n.
        probs: five probabilities for the outer-lower, inner-lower, median,
               inner-upper and outer-upper quantiles.

    Returns:
        DataFrame with columns ll, l, m, h, hh, y_obs.
    """
    if len(probs) != 5:
        raise ValueError("Exactly five interval probabilities are required.")
    quantiles = np.quantile(np.asarray(draws, dtype=float), probs, axis=0).T
    intervals = pd.DataFrame(quantiles, columns=INTERVAL_COLUMNS)
    intervals['y_obs'] = np.asarray(y_obs, dtype=float)
    return intervals


def get_coverage(intervals):
    """
    Number of observations inside the outer (90%) and inner (50%) intervals.

    Returns:
        pandas.Series with ``cov90`` and ``cov50``.
    """
    y = intervals['y_obs']
    return pd.Series({
        'cov90': int(((intervals['hh'] >= y) & (intervals['ll'] <= y)).sum()),
        'cov50': int(((intervals['h'] >= y) & (intervals['l'] <= y)).sum()),
    })


def posterior_predictive_checks(pmm, modes=('conditional', 'fixed', 'marginal'), probs=None, rng=None):
    """
    Posterior predictive intervals and coverage for every trait and
    prediction mode.

    Returns:
        dict: {(mode, trait): {'intervals': DataFrame, 'coverage': Series}}
    """
    rng = rng if isinstance(rng, np.random.Generator) else np.random.default_rng(rng)
    probs = probs or pmm.config.interval_probs
    checks = {}
    for mode in modes:
        predictions = pmm.posterior_predict(mode, rng=rng)
        for trait in pmm.traits:
            intervals = predictive_intervals(predictions[trait], pmm.data[trait], probs)
            coverage = get_coverage(intervals)
            checks[(mode, trait)] = {'intervals': intervals, 'coverage': coverage}
            logger.info("PP-check (%s) %s: %d/%d in 90%% interval, %d/%d in 50%% interval.",
                        mode, trait, coverage['cov90'], len(intervals), coverage['cov50'], len(intervals))
    return checks


def relative_efficiency(log_likelihood):
    """
    Relative effective sample size of ``exp(log_likelihood)`` per observation
    (loo ``relative_eff``).

    Args:
        log_likelihood: array of shape (chains, draws, n).
    """
    ll = np.asarray(log_likelihood, dtype=float)
    n_samples = ll.shape[0] * ll.shape[1]
    return np.array([az.ess(np.exp(ll[:, :, i])) / n_samples for i in range(ll.shape[2])])


def weighted_quantiles(values, log_weights, probs):
    """
    Quantiles of ``values`` (draws on the last axis) under normalised
    importance weights ``exp(log_weights)``.
    """
    values = np.atleast_2d(values)
    weights = np.exp(np.atleast_2d(log_weights))
    result = np.empty((values.shape[0], len(probs)))
    for i in range(values.shape[0]):
        order = np.argsort(values[i])
        v = values[i][order]
        w = weights[i][order]
        cdf = (np.cumsum(w) - 0.5 * w) / w.sum()
        result[i] = np.interp(probs, cdf, v)
    return result


def loo_predictive_intervals(pmm, trait, probs=None, predictions=None, rng=None):
    """
    Leave-one-out predictive quantiles via Pareto-smoothed importance sampling.

    Args:
        pmm: Fitted MultivariatePMM.
        trait: Response to check.
        probs: Five interval probabilities.
        predictions: Optional conditional posterior-predictive draws
                     (draws, n); drawn from ``pmm`` when omitted.

    Returns:
        dict: ``intervals`` (ll, l, m, h, hh, y_obs, pareto_k), ``coverage``
        and ``n_high_k`` (observations over the Pareto k threshold).
    """
    probs = probs or pmm.config.interval_probs
    log_lik = pmm.pointwise_log_likelihood(trait)
    n_obs = log_lik.shape[2]
    if predictions is None:
        predictions = pmm.posterior_predict('conditional', rng=rng)[trait]

    r_eff = np.nan_to_num(relative_efficiency(log_lik), nan=1.0)
    # PSIS on the log ratios -log_lik; observations first, draws last
    log_ratios = -log_lik.reshape(-1, n_obs).T
    log_weights = np.empty_like(log_ratios)
    pareto_k = np.empty(n_obs)
    for i in range(n_obs):
        lw, k = az.psislw(log_ratios[i:i + 1], reff=r_eff[i])
        log_weights[i] = np.asarray(lw)[0]
        pareto_k[i] = np.asarray(k).ravel()[0]

    quantiles = weighted_quantiles(np.asarray(predictions).T, log_weights, probs)
    intervals = pd.DataFrame(quantiles, columns=INTERVAL_COLUMNS)
    intervals['y_obs'] = pmm.data[trait].values.astype(float)
    intervals['pareto_k'] = pareto_k
    n_high_k = int((pareto_k > pmm.config.pareto_k_threshold).sum())
    if n_high_k:
        logger.warning("%d observation(s) of %s have Pareto k above %.2f; LOO estimates may be unreliable.",
                       n_high_k, trait, pmm.config.pareto_k_threshold)
    return {'intervals': intervals, 'coverage': get_coverage(intervals), 'n_high_k': n_high_k}


def loo_summary(pmm, trait):
    """PSIS-LOO expected log predictive density for one response (``arviz.loo``)."""
    pmm.add_log_likelihood()
    # Constant correlation diagonals have undefined ESS, so reff comes from the likelihood
    r_eff = np.nanmean(relative_efficiency(pmm.pointwise_log_likelihood(trait)))
    reff = float(r_eff) if np.isfinite(r_eff) else 1.0
    return az.loo(pmm.trace, var_name=trait, pointwise=True, reff=reff)


def residual_analysis(pmm, mode='conditional', rng=None):
    """
    Mean predictive error (observed minus predicted) per taxon and trait.

    Returns:
        DataFrame indexed by taxon with one column per trait.
    """
    predictions = pmm.posterior_predict(mode, rng=rng)
    errors = {
        trait: (pmm.data[trait].values[None, :] - predictions[trait]).mean(axis=0)
        for trait in pmm.traits
    }
    return pd.DataFrame(errors, index=pmm.taxa)


def parameter_recovery(draws, true_values, hdi_prob=0.9):
    """
    Compares posterior draws with the parameters used to simulate the data.

    Args:
        draws (DataFrame): Posterior draws, one column per parameter
                           (e.g. ``MultivariatePMM.population_draws()``).
        true_values (dict): Generating value per parameter label.
        hdi_prob (float): Probability mass of the highest density interval.

    Returns:
        DataFrame indexed by parameter: true, mean, lower, upper, covered.
    """
    rows = {}
    for label, true in true_values.items():
        if label not in draws.columns:
            logger.debug("No posterior draws for %s; skipped.", label)
            continue
        samples = draws[label].values
        lower, upper = az.hdi(samples, hdi_prob=hdi_prob)
        rows[label] = {
            'true': true,
            'mean': float(samples.mean()),
            'lower': float(lower),
            'upper': float(upper),
            'covered': bool(lower <= true <= upper),
        }
    return pd.DataFrame.from_dict(rows, orient='index')


def compare_fits(fits):
    """
    Posterior mean and standard deviation of every parameter across fits.

    Args:
        fits (dict): label -> DataFrame of posterior draws.

    Returns:
        Tidy DataFrame with columns fit, var, mean, err.
    """
    rows = []
    for label, draws in fits.items():
        for var in draws.columns:
            rows.append({'fit': label, 'var': var,
                         'mean': float(draws[var].mean()), 'err': float(draws[var].std())})
    return pd.DataFrame(rows, columns=['fit', 'var', 'mean', 'err'])
