import logging

import numpy as np
import pandas as pd
from scipy.linalg import cho_factor, cho_solve
from scipy.optimize import minimize

from ..analysis.comparative_methods import covariance_to_sd_cor
from ..core.config import DefaultConfig

logger = logging.getLogger(__name__)


def brownian_motion(A, values):
    """
    Maximum likelihood fit of univariate Brownian motion.

    Args:
        A: Taxon covariance matrix (n x n).
        values: Tip values in the row order of ``A``.

    Returns:
        dict: root state (GLS mean), sigma2 MLE and log-likelihood.
    """
    A = np.asarray(A, dtype=float)
    x = np.asarray(values, dtype=float)
    n = x.size
    factor = cho_factor(A, lower=True)
    ones = np.ones(n)
    A_inv_1 = cho_solve(factor, ones)
    root = float(A_inv_1 @ x / (A_inv_1 @ ones))
    diff = x - root
    sigma2 = float(diff @ cho_solve(factor, diff) / n)
    log_det = 2 * np.sum(np.log(np.diag(factor[0])))
    log_likelihood = -0.5 * (n * np.log(2 * np.pi) + log_det + n * np.log(sigma2) + n)
    return {'root_state': root, 'sigma2': sigma2, 'log_likelihood': float(log_likelihood)}


def _n_chol(k):
    return k * (k + 1) // 2


def _unpack_cholesky(theta, k):
    """Lower-triangular factor from a log-Cholesky vector (log diagonal)."""
    L = np.zeros((k, k))
    L[np.tril_indices(k)] = theta
    L[np.diag_indices(k)] = np.exp(np.diag(L))
    return L


def _pack_cholesky(cov):
    k = cov.shape[0]
    L = np.linalg.cholesky(cov + 1e-8 * np.eye(k))
    L[np.diag_indices(k)] = np.log(np.diag(L))
    return L[np.tril_indices(k)]


class MaximumLikelihoodPMM:
    """
    Maximum likelihood fit of the multivariate phylogenetic mixed model for
    gaussian traits:

        vec(Y) ~ N(X beta, B ⊗ A + C ⊗ I)

    B and C are parameterised by log-Cholesky factors; the intercepts are
    profiled out by generalised least squares at every evaluation.
    """
    def __init__(self, traits=None, config=None):
        self.config = config if config is not None else DefaultConfig()
        self.traits = list(traits if traits is not None else self.config.traits)
        self.parameters = {}
        self.result = None
        logger.debug("MaximumLikelihoodPMM initialized for traits %s", self.traits)

    def _design(self, data, A, taxon_column):
        taxa = list(data[taxon_column])
        A = A.loc[taxa, taxa].values if isinstance(A, pd.DataFrame) else np.asarray(A, dtype=float)
        Y = data[self.traits].values.astype(float)
        if np.isnan(Y).any():
            raise ValueError("Trait data contain missing values.")
        n, k = Y.shape
        X = np.kron(np.eye(k), np.ones((n, 1)))
        return A, Y.T.reshape(-1), X, n, k

    def negative_log_likelihood(self, theta, A, y, X, n, k):
        m = _n_chol(k)
        L_B = _unpack_cholesky(theta[:m], k)
        L_C = _unpack_cholesky(theta[m:], k)
        V = np.kron(L_B @ L_B.T, A) + np.kron(L_C @ L_C.T, np.eye(n))
        try:
            factor = cho_factor(V, lower=True)
        except np.linalg.LinAlgError:
            return np.inf
        V_inv_X = cho_solve(factor, X)
        beta = np.linalg.solve(X.T @ V_inv_X, V_inv_X.T @ y)
        r = y - X @ beta
        log_det = 2 * np.sum(np.log(np.diag(factor[0])))
        return 0.5 * (y.size * np.log(2 * np.pi) + log_det + r @ cho_solve(factor, r))

    def optimize_parameters(self, data, A, taxon_column='animal'):
        """
        Optimizes B and C to maximise the likelihood of the trait table.

        Args:
            data (DataFrame): Trait table with one row per taxon.
            A: Taxon covariance matrix (DataFrame indexed by taxon, or array
               in the row order of ``data``).

        Returns:
            dict with ``beta``, ``B``, ``C``, standard deviations, correlations,
            ``log_likelihood`` and ``converged``. Also stored in
            ``self.parameters``.
        """
        A, y, X, n, k = self._design(data, A, taxon_column)

        # Start from an even split of each trait's variance
        total = np.cov(y.reshape(k, n)) + 1e-6 * np.eye(k)
        theta0 = np.concatenate([_pack_cholesky(total / 2), _pack_cholesky(total / 2)])

        logger.info("Optimizing ML parameters with %s...", self.config.ml_optimization_algorithm)
        result = minimize(self.negative_log_likelihood, theta0, args=(A, y, X, n, k),
                          method=self.config.ml_optimization_algorithm,
                          options={'maxiter': self.config.ml_max_iterations})
        if not result.success:
            logger.warning("ML optimization did not converge: %s", result.message)

        m = _n_chol(k)
        L_B = _unpack_cholesky(result.x[:m], k)
        L_C = _unpack_cholesky(result.x[m:], k)
        B = L_B @ L_B.T
        C = L_C @ L_C.T
        V = np.kron(B, A) + np.kron(C, np.eye(n))
        factor = cho_factor(V, lower=True)
        V_inv_X = cho_solve(factor, X)
        beta = np.linalg.solve(X.T @ V_inv_X, V_inv_X.T @ y)

        sd_B, cor_B = covariance_to_sd_cor(B)
        sd_C, cor_C = covariance_to_sd_cor(C)
        self.result = result
        self.parameters = {
            'beta': pd.Series(beta, index=self.traits),
            'B': pd.DataFrame(B, index=self.traits, columns=self.traits),
            'C': pd.DataFrame(C, index=self.traits, columns=self.traits),
            'sd_phylo': pd.Series(sd_B, index=self.traits),
            'cor_phylo': pd.DataFrame(cor_B, index=self.traits, columns=self.traits),
            'sd_resid': pd.Series(sd_C, index=self.traits),
            'cor_resid': pd.DataFrame(cor_C, index=self.traits, columns=self.traits),
            'log_likelihood': float(-result.fun),
            'converged': bool(result.success),
        }
        return self.parameters

    def estimates(self):
        """Point estimates labelled like the PMM posterior summary."""
        if not self.parameters:
            raise ValueError("Parameters must be optimized first.")
        p = self.parameters
        values = {}
        for t in self.traits:
            values[f"Intercept[{t}]"] = p['beta'][t]
            values[f"sd_phylo[{t}]"] = p['sd_phylo'][t]
            values[f"sd_resid[{t}]"] = p['sd_resid'][t]
        for i in range(len(self.traits)):
            for j in range(i + 1, len(self.traits)):
                a, b = self.traits[i], self.traits[j]
                values[f"cor_phylo[{a}, {b}]"] = p['cor_phylo'].loc[a, b]
                values[f"cor_resid[{a}, {b}]"] = p['cor_resid'].loc[a, b]
        return pd.Series(values)
