import logging

import arviz as az
import numpy as np
import pandas as pd
import pymc as pm
import pytensor.tensor as pt
import xarray as xr
from scipy import stats
from scipy.special import expit

from ..analysis.comparative_methods import conditional_slopes, sd_cor_to_covariance
from ..core.config import DefaultConfig

logger = logging.getLogger(__name__)

PREDICTION_MODES = ('conditional', 'fixed', 'marginal')


def _safe_cholesky(matrix, jitter=1e-10):
    """Cholesky factor of the last two axes, adding jitter to the diagonal if needed."""
    matrix = np.asarray(matrix, dtype=float)
    eye = np.eye(matrix.shape[-1])
    for scale in (0.0, jitter, jitter * 1e3, jitter * 1e6):
        try:
            return np.linalg.cholesky(matrix + scale * eye)
        except np.linalg.LinAlgError:
            continue
    raise np.linalg.LinAlgError("Matrix is not positive definite, even after adding jitter.")


class MultivariatePMM:
    """
    Bayesian multivariate phylogenetic mixed model fitted with PyMC.

    For n taxa and k traits the linear predictor is

        eta = 1 beta' + a,    vec(a) ~ MVN(0, B ⊗ A)

    where A is the (fixed, known) taxon-level phylogenetic correlation matrix
    and B the trait-level phylogenetic covariance. The phylogenetic effects are
    parameterised non-centrally as ``a = L_A Z L_B'`` with ``Z`` standard
    normal. B is built from an LKJ prior on its correlations and half
    Student-t priors on its standard deviations.

    When every trait is gaussian and residual correlation is enabled the
    residuals are ``MVN(0, C)`` per taxon with the same prior structure as B.
    Otherwise each trait has its own likelihood: gaussian traits get an
    independent residual sd (``sigma_<trait>``) and bernoulli traits use a
    logit link without a residual term.
    """
    def __init__(self, traits=None, families=None, config=None):
        """
        Args:
            traits (list, optional): Response columns. Defaults to ``config.traits``.
            families (list, optional): 'gaussian' or 'bernoulli' per trait.
                                       Defaults to ``config.families``.
            config (DefaultConfig, optional): Prior and sampler settings.
        """
        self.config = config if config is not None else DefaultConfig()
        self.traits = list(traits if traits is not None else self.config.traits)
        self.families = list(families if families is not None else self.config.families)
        if len(self.traits) < 2:
            raise ValueError("A multivariate PMM needs at least two traits.")
        if len(self.families) != len(self.traits):
            raise ValueError("Provide exactly one family per trait.")
        unknown = set(self.families) - {'gaussian', 'bernoulli'}
        if unknown:
            raise ValueError(f"Unsupported families: {sorted(unknown)}")
        self.residual_correlation = bool(self.config.residual_correlation) and \
            all(f == 'gaussian' for f in self.families)

        self.model = None  # PyMC model
        self.trace = None  # arviz.InferenceData returned by pm.sample
        self.data = None
        self.A = None

    @property
    def taxa(self):
        return list(self.data['animal']) if self.data is not None else []

    def _prepare(self, data, A, taxon_column):
        missing = [c for c in [taxon_column] + self.traits if c not in data.columns]
        if missing:
            raise KeyError(f"Columns missing from data: {missing}")
        if data[self.traits].isna().any().any():
            raise ValueError("Trait data contain missing values.")
        for trait, family in zip(self.traits, self.families):
            if family == 'bernoulli' and not data[trait].isin([0, 1]).all():
                raise ValueError(f"Bernoulli trait '{trait}' must be coded 0/1.")

        taxa = [str(t) for t in data[taxon_column]]
        if len(set(taxa)) != len(taxa):
            raise ValueError("Each taxon must appear once in the trait table.")
        if not isinstance(A, pd.DataFrame):
            A = pd.DataFrame(np.asarray(A, dtype=float), index=taxa, columns=taxa)
        A = A.loc[taxa, taxa]

        d = pd.DataFrame({'animal': taxa})
        for trait in self.traits:
            d[trait] = data[trait].values
        d['obs'] = np.arange(1, len(d) + 1)
        return d, A

    def build_model(self, data, A, taxon_column='animal'):
        """
        Builds the PyMC model for a trait table and its phylogenetic matrix.

        Args:
            data (DataFrame): One row per taxon with the trait columns.
            A (DataFrame): Taxon-level phylogenetic correlation matrix indexed
                           by taxon name (e.g. ``phylo_vcv(tree, corr=True)``).
            taxon_column (str): Column holding taxon names.

        Returns:
            pm.Model
        """
        self.data, self.A = self._prepare(data, A, taxon_column)
        Y = self.data[self.traits].values.astype(float)
        L_A = _safe_cholesky(self.A.values)
        k = len(self.traits)
        cfg = self.config

        coords = {
            'obs': self.taxa,
            'obs_bis': self.taxa,
            'trait': self.traits,
            'trait_bis': self.traits,
        }
        with pm.Model(coords=coords) as model:
            L_A_data = pm.Data('L_A', L_A, dims=('obs', 'obs_bis'))
            intercept = pm.Normal('Intercept', mu=0.0, sigma=cfg.bayesian_intercept_prior_sd, dims='trait')

            chol_B, corr_B, sd_B = pm.LKJCholeskyCov(
                'chol_phylo', n=k, eta=cfg.bayesian_lkj_eta,
                sd_dist=pm.HalfStudentT.dist(nu=3, sigma=cfg.bayesian_sd_prior_scale, shape=k),
                compute_corr=True, store_in_trace=False,
            )
            pm.Deterministic('sd_phylo', sd_B, dims='trait')
            pm.Deterministic('cor_phylo', corr_B, dims=('trait', 'trait_bis'))

            z = pm.Normal('z_phylo', mu=0.0, sigma=1.0, dims=('obs', 'trait'))
            a = pm.Deterministic('phylo_effect', pt.dot(pt.dot(L_A_data, z), chol_B.T), dims=('obs', 'trait'))
            mu = intercept[None, :] + a

            if self.residual_correlation:
                chol_C, corr_C, sd_C = pm.LKJCholeskyCov(
                    'chol_resid', n=k, eta=cfg.bayesian_lkj_eta,
                    sd_dist=pm.HalfStudentT.dist(nu=3, sigma=cfg.bayesian_sd_prior_scale, shape=k),
                    compute_corr=True, store_in_trace=False,
                )
                pm.Deterministic('sd_resid', sd_C, dims='trait')
                pm.Deterministic('cor_resid', corr_C, dims=('trait', 'trait_bis'))
                pm.MvNormal('y', mu=mu, chol=chol_C, observed=Y, dims=('obs', 'trait'))
            else:
                for j, (trait, family) in enumerate(zip(self.traits, self.families)):
                    if family == 'gaussian':
                        sigma = pm.HalfStudentT(f'sigma_{trait}', nu=3, sigma=cfg.bayesian_sd_prior_scale)
                        pm.Normal(f'y_{trait}', mu=mu[:, j], sigma=sigma, observed=Y[:, j], dims='obs')
                    else:
                        pm.Bernoulli(f'y_{trait}', logit_p=mu[:, j], observed=Y[:, j].astype(int), dims='obs')

        self.model = model
        logger.info("Built MV-PMM for %d taxa and traits %s (families %s, residual correlation %s).",
                    len(self.taxa), self.traits, self.families, self.residual_correlation)
        return model

    def mcmc_sampling(self, draws=None, tune=None, chains=None, cores=None, random_seed=None, **kwargs):
        """
        Performs MCMC sampling (NUTS) using the built PyMC model.

        Args:
            draws (int): Posterior draws per chain.
            tune (int): Tuning (warm-up) iterations per chain.
            chains (int): Number of chains.
            cores (int): Chains run in parallel by PyMC.
            random_seed: Seed passed to ``pm.sample``.
            **kwargs: Additional keyword arguments to pass to ``pymc.sample()``.

        Returns:
            arviz.InferenceData, also stored in ``self.trace``.

        Raises:
            ValueError: If the model has not been built first.
        """
        if self.model is None:
            raise ValueError("Model must be built before running MCMC sampling.")
        cfg = self.config
        draws = draws if draws is not None else cfg.bayesian_mcmc_draws
        tune = tune if tune is not None else cfg.bayesian_mcmc_tune
        chains = chains if chains is not None else cfg.bayesian_mcmc_chains
        cores = cores if cores is not None else cfg.bayesian_mcmc_cores
        random_seed = random_seed if random_seed is not None else cfg.seed
        kwargs.setdefault('target_accept', cfg.bayesian_target_accept)
        kwargs.setdefault('progressbar', False)

        logger.info("Running MCMC sampling with draws=%d, tune=%d, chains=%d...", draws, tune, chains)
        with self.model:
            trace = pm.sample(draws=draws, tune=tune, chains=chains, cores=cores,
                              random_seed=random_seed, **kwargs)
        trace.posterior.attrs['families'] = ','.join(self.families)
        trace.posterior.attrs['residual_correlation'] = int(self.residual_correlation)
        self.trace = trace
        n_div = int(trace.sample_stats['diverging'].sum())
        if n_div:
            logger.warning("%d divergent transitions after tuning.", n_div)
        return trace

    def fit(self, data, A, **kwargs):
        """Builds the model and samples from it."""
        self.build_model(data, A)
        return self.mcmc_sampling(**kwargs)

    def _require_trace(self):
        if self.trace is None:
            raise ValueError("MCMC trace must be available; fit or load a model first.")

    def draws(self, name):
        """Posterior draws of a variable with chains pooled on the first axis."""
        self._require_trace()
        return self.trace.posterior[name].stack(sample=('chain', 'draw')).transpose('sample', ...).values

    def residual_sd_draws(self, trait):
        """Residual sd draws for one trait; None for bernoulli traits."""
        j = self.traits.index(trait)
        if self.residual_correlation:
            return self.draws('sd_resid')[:, j]
        if self.families[j] == 'gaussian':
            return self.draws(f'sigma_{trait}')
        return None

    def parameter_labels(self):
        """Labels of the population-level parameters, as ``arviz.summary`` writes them."""
        labels = [f"Intercept[{t}]" for t in self.traits]
        labels += [f"sd_phylo[{t}]" for t in self.traits]
        pairs = [(self.traits[i], self.traits[j])
                 for i in range(len(self.traits)) for j in range(i + 1, len(self.traits))]
        labels += [f"cor_phylo[{a}, {b}]" for a, b in pairs]
        if self.residual_correlation:
            labels += [f"sd_resid[{t}]" for t in self.traits]
            labels += [f"cor_resid[{a}, {b}]" for a, b in pairs]
        else:
            labels += [f"sigma_{t}" for t, f in zip(self.traits, self.families) if f == 'gaussian']
        return labels

    def _var_names(self):
        names = ['Intercept', 'sd_phylo', 'cor_phylo']
        if self.residual_correlation:
            names += ['sd_resid', 'cor_resid']
        else:
            names += [f'sigma_{t}' for t, f in zip(self.traits, self.families) if f == 'gaussian']
        return names

    def posterior_analysis(self, var_names=None, hdi_prob=None):
        """
        Summarises the posterior of the population-level parameters with ArviZ.

        Correlation matrices are reduced to their upper triangle.

        Returns:
            pandas.DataFrame from ``arviz.summary``.
        """
        self._require_trace()
        summary = az.summary(self.trace, var_names=var_names or self._var_names(),
                             hdi_prob=hdi_prob or self.config.hdi_prob)
        if var_names is None:
            summary = summary.loc[[label for label in self.parameter_labels() if label in summary.index]]
        return summary

    def population_draws(self):
        """
        Posterior draws of the population-level parameters.

        Returns:
            pandas.DataFrame with one column per label of ``parameter_labels()``.
        """
        columns = {}
        intercept = self.draws('Intercept')
        sd_phylo = self.draws('sd_phylo')
        cor_phylo = self.draws('cor_phylo')
        sd_resid = cor_resid = None
        if self.residual_correlation:
            sd_resid = self.draws('sd_resid')
            cor_resid = self.draws('cor_resid')
        for j, t in enumerate(self.traits):
            columns[f"Intercept[{t}]"] = intercept[:, j]
            columns[f"sd_phylo[{t}]"] = sd_phylo[:, j]
        for i in range(len(self.traits)):
            for j in range(i + 1, len(self.traits)):
                pair = f"{self.traits[i]}, {self.traits[j]}"
                columns[f"cor_phylo[{pair}]"] = cor_phylo[:, i, j]
                if cor_resid is not None:
                    columns[f"cor_resid[{pair}]"] = cor_resid[:, i, j]
        for j, (t, f) in enumerate(zip(self.traits, self.families)):
            if sd_resid is not None:
                columns[f"sd_resid[{t}]"] = sd_resid[:, j]
            elif f == 'gaussian':
                columns[f"sigma_{t}"] = self.draws(f'sigma_{t}')
        return pd.DataFrame(columns)[[c for c in self.parameter_labels() if c in columns]]

    def posterior_covariances(self):
        """
        Posterior draws of the phylogenetic (B) and residual (C) covariance
        matrices, shape (draws, k, k). Bernoulli traits have no residual term
        and get zero rows/columns in C.
        """
        B = sd_cor_to_covariance(self.draws('sd_phylo'), self.draws('cor_phylo'))
        if self.residual_correlation:
            C = sd_cor_to_covariance(self.draws('sd_resid'), self.draws('cor_resid'))
        else:
            C = np.zeros_like(B)
            for j, trait in enumerate(self.traits):
                sd = self.residual_sd_draws(trait)
                if sd is not None:
                    C[:, j, j] = sd ** 2
        return B, C

    def partition_slopes(self):
        """
        Posterior-mean slopes implied by B and C (trait i on trait j), to
        compare the phylogenetic and residual partitions with a PGLS slope.
        """
        B, C = self.posterior_covariances()
        return {
            'phylo': conditional_slopes(B.mean(axis=0), self.traits),
            'resid': conditional_slopes(C.mean(axis=0), self.traits),
        }

    def _mu_draws(self, mode, rng):
        intercept = self.draws('Intercept')
        S = intercept.shape[0]
        n = len(self.taxa)
        if mode == 'conditional':
            return intercept[:, None, :] + self.draws('phylo_effect')
        if mode == 'fixed':
            return np.broadcast_to(intercept[:, None, :], (S, n, len(self.traits))).copy()
        if mode == 'marginal':
            # New taxon levels: effects drawn from MVN(0, B) independently of the tree
            B, _ = self.posterior_covariances()
            L_B = _safe_cholesky(B)
            z = rng.standard_normal((S, n, len(self.traits)))
            return intercept[:, None, :] + np.einsum('sij,snj->sni', L_B, z)
        raise ValueError(f"Unknown prediction mode '{mode}'; use one of {PREDICTION_MODES}.")

    def posterior_predict(self, mode='conditional', rng=None):
        """
        Draws from the posterior predictive distribution.

        Args:
            mode (str): 'conditional' uses the fitted taxon-level effects,
                        'fixed' sets them to zero, 'marginal' draws new effects
                        from ``MVN(0, B)``.
            rng: numpy Generator or seed.

        Returns:
            dict: trait name -> array of shape (draws, n taxa).
        """
        self._require_trace()
        rng = rng if isinstance(rng, np.random.Generator) else np.random.default_rng(rng)
        mu = self._mu_draws(mode, rng)
        S, n, k = mu.shape
        if self.residual_correlation:
            _, C = self.posterior_covariances()
            L_C = _safe_cholesky(C)
            y = mu + np.einsum('sij,snj->sni', L_C, rng.standard_normal((S, n, k)))
            return {trait: y[:, :, j] for j, trait in enumerate(self.traits)}

        predictions = {}
        for j, (trait, family) in enumerate(zip(self.traits, self.families)):
            if family == 'gaussian':
                sd = self.residual_sd_draws(trait)
                predictions[trait] = mu[:, :, j] + sd[:, None] * rng.standard_normal((S, n))
            else:
                predictions[trait] = rng.binomial(1, expit(mu[:, :, j])).astype(float)
        return predictions

    def pointwise_log_likelihood(self, trait):
        """
        Log-likelihood of each observation of ``trait`` under every posterior
        draw, conditional on the fitted taxon-level effects.

        Returns:
            numpy.ndarray of shape (chains, draws, n taxa).
        """
        self._require_trace()
        j = self.traits.index(trait)
        mu = self.draws('Intercept')[:, None, j] + self.draws('phylo_effect')[:, :, j]
        y = self.data[trait].values[None, :]
        sd = self.residual_sd_draws(trait)
        if sd is not None:
            ll = stats.norm.logpdf(y, loc=mu, scale=sd[:, None])
        else:
            ll = stats.bernoulli.logpmf(y, expit(mu))
        n_chain = self.trace.posterior.sizes['chain']
        n_draw = self.trace.posterior.sizes['draw']
        return ll.reshape(n_chain, n_draw, -1)

    def add_log_likelihood(self):
        """
        Stores per-trait pointwise log-likelihoods in the ``log_likelihood``
        group of the trace so that ``arviz.loo`` can be used per response.
        """
        self._require_trace()
        posterior = self.trace.posterior
        coords = {'chain': posterior['chain'].values, 'draw': posterior['draw'].values, 'obs': self.taxa}
        arrays = {
            trait: xr.DataArray(self.pointwise_log_likelihood(trait), dims=('chain', 'draw', 'obs'), coords=coords)
            for trait in self.traits
        }
        if 'log_likelihood' in self.trace.groups():
            for trait, array in arrays.items():
                self.trace.log_likelihood[trait] = array
        else:
            self.trace.add_groups({'log_likelihood': xr.Dataset(arrays)})
        return self.trace

    def save(self, path):
        """Writes the trace (posterior, observed data, L_A, metadata) to NetCDF."""
        self._require_trace()
        self.trace.to_netcdf(str(path))
        logger.info("Saved MV-PMM fit to %s", path)
        return path

    @classmethod
    def from_inference_data(cls, idata, config=None):
        """
        Rebuilds a fitted model wrapper from an InferenceData produced by
        ``mcmc_sampling``. The PyMC model itself is not rebuilt.
        """
        traits = [str(t) for t in idata.posterior['trait'].values]
        attrs = idata.posterior.attrs
        families = str(attrs.get('families', ','.join(['gaussian'] * len(traits)))).split(',')
        config = DefaultConfig.from_dict(config.to_dict()) if config is not None else DefaultConfig()
        config.residual_correlation = bool(int(attrs.get('residual_correlation', 1)))

        pmm = cls(traits=traits, families=families, config=config)
        taxa = [str(t) for t in idata.posterior['obs'].values]
        observed = idata.observed_data
        d = pd.DataFrame({'animal': taxa})
        for j, trait in enumerate(traits):
            if 'y' in observed:
                d[trait] = observed['y'].values[:, j]
            else:
                d[trait] = observed[f'y_{trait}'].values
        d['obs'] = np.arange(1, len(d) + 1)
        L_A = idata.constant_data['L_A'].values
        pmm.data = d
        pmm.A = pd.DataFrame(L_A @ L_A.T, index=taxa, columns=taxa)
        pmm.trace = idata
        return pmm

    @classmethod
    def load(cls, path, config=None):
        """Loads a fit written by ``save``."""
        idata = az.from_netcdf(str(path))
        logger.info("Loaded MV-PMM fit from %s", path)
        return cls.from_inference_data(idata, config)

    @staticmethod
    def drop_taxon(data, A, taxon, taxon_column='animal'):
        """
        Removes one taxon from the trait table and the phylogenetic matrix,
        e.g. to refit the model and predict the held-out taxon.

        Returns:
            tuple: (data, A) without ``taxon``.
        """
        if taxon not in set(data[taxon_column]):
            raise KeyError(f"Taxon '{taxon}' not in data.")
        d = data[data[taxon_column] != taxon].reset_index(drop=True)
        if 'obs' in d.columns:
            d['obs'] = np.arange(1, len(d) + 1)
        keep = [t for t in A.index if t != taxon]
        return d, A.loc[keep, keep]
