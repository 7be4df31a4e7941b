import logging

import yaml

logger = logging.getLogger(__name__)


class DefaultConfig:
    """
    Default configuration values for the mvpmm package.
    """
    def __init__(self):
        # Tree simulation
        self.tree_generator = 'price' # 'price' (niche model) or 'bd' (birth-death)
        self.n_taxa_per_clade = 5
        self.n_clades = 2
        self.tree_replicates = 2
        self.clade_height = 0.9
        self.backbone_heights = {'short': 0.1, 'long': 1.1} # balanced vs early split
        self.birth_rate = 1.0
        self.death_rate = 0.0
        self.price_sigma = [[1.0, 0.75], [0.75, 1.0]] # niche covariance for the Price model
        self.tip_prefix = 't'
        self.seed = 58198

        # Trait simulation
        self.traits = ['y1', 'y2']
        self.families = ['gaussian', 'gaussian'] # 'gaussian' or 'bernoulli' per trait
        self.intercepts = [0.0, 0.0]
        self.standardize_vcv = True # unit-diagonal taxon covariance (vcv.phylo(corr = TRUE))

        # Bayesian sampler defaults
        self.bayesian_mcmc_chains = 4
        self.bayesian_mcmc_cores = 4
        self.bayesian_mcmc_draws = 1000
        self.bayesian_mcmc_tune = 1000
        self.bayesian_target_accept = 0.9
        self.bayesian_lkj_eta = 1.0
        self.bayesian_sd_prior_scale = 2.5 # half Student-t(3, 0, scale) on standard deviations
        self.bayesian_intercept_prior_sd = 5.0
        self.residual_correlation = True

        # Maximum likelihood defaults
        self.ml_optimization_algorithm = 'L-BFGS-B'
        self.ml_max_iterations = 2000

        # Validation
        self.interval_probs = [0.05, 0.25, 0.5, 0.75, 0.95]
        self.hdi_prob = 0.9
        self.rhat_threshold = 1.01
        self.pareto_k_threshold = 0.7
        self.max_treedepth = 10
        self.fit_methods = ['pgls', 'ml', 'pmm']

        # Output and logging
        self.output_directory = './mvpmm_output'
        self.log_level = 'INFO'
        self.log_file = None
        self.save_plots = True
        self.plot_format = 'html' # 'html', or any static format plotly can export ('png', 'svg', 'pdf')

    def to_dict(self):
        return dict(self.__dict__)

    @classmethod
    def from_dict(cls, values):
        """
        Builds a configuration from defaults overridden by ``values``.
        Unknown keys are kept so user scripts can carry their own settings.
        """
        config = cls()
        for key, value in (values or {}).items():
            setattr(config, key, value)
        return config

    def __str__(self):
        return str(self.__dict__)


def load_config(config_path: str) -> DefaultConfig:
    """
    Loads a configuration from a YAML file and merges it with default settings.

    Args:
        config_path: Path to the YAML configuration file.

    Returns:
        A DefaultConfig whose attributes are overridden by the user's values.
        If the file is missing or cannot be parsed the defaults are returned
        and the problem is logged.
    """
    user_config = None
    try:
        with open(config_path, 'r') as f:
            user_config = yaml.safe_load(f)
    except FileNotFoundError:
        logger.error("Configuration file not found at '%s'. Using default configuration.", config_path)
    except yaml.YAMLError as e:
        logger.error("Error parsing YAML configuration file at '%s': %s. Using default configuration.", config_path, e)

    if user_config is not None and not isinstance(user_config, dict):
        logger.error("Configuration file '%s' must contain a mapping, got %s. Using default configuration.",
                     config_path, type(user_config).__name__)
        user_config = None

    return DefaultConfig.from_dict(user_config)
