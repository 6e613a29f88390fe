import logging
import numpy as np

from ...exceptions import InvalidConfigError
from ...utils.compute_utils import iterable

logger = logging.getLogger(__name__)

BLR_METHODS = ('bayesN', 'bayesA', 'bayesC', 'bayesR')
MULTI_TRAIT_METHODS = ('bayesN', 'bayesC')
UPDATE_ORDERS = ('fixed', 'random')
INIT_EFFECTS = ('zero', 'marginal')

DEFAULT_BAYESR_GAMMA = (0., 0.01, 0.1, 1.)
DEFAULT_BAYESR_PI = (0.95, 0.02, 0.02, 0.01)


def sample_scaled_inv_chi2(rng, df, ss, size=None):
    """
    Draw from a scaled inverse chi-squared distribution, parametrized by the
    degrees of freedom `df` and the sum of squares `ss` (i.e. `df * scale`).

    :return: `ss / X`, where `X ~ chi2(df)`.
    """
    return ss / rng.chisquare(df, size=size)


class MarkerEffectPrior(object):
    """
    The prior on the marker effects of a Bayesian linear regression model, expressed
    as a finite mixture of zero-mean normal components with variances `gamma_k * vb`
    and mixing probabilities `pi_k`. A component with `gamma_k = 0` is a point mass at zero
    (the null component).

    * `bayesN`: a single normal component (`gamma = [1]`, `pi = [1]`).
    * `bayesA`: a single normal component whose variance is marker-specific.
    * `bayesC`: a null component and a normal component (`gamma = [0, 1]`, `pi = [1 - p, p]`),
      where `p` is the prior probability that a marker has a non-zero effect.
    * `bayesR`: a null component and several normal components with increasing scales.

    :ivar method: The name of the prior family.
    :ivar gamma: The scales of the mixture components.
    :ivar pi: The mixing probabilities of the components.
    """

    def __init__(self, method, gamma, pi):
        self.method = method
        self.gamma = np.asarray(gamma, dtype=np.float64)
        self.pi = np.asarray(pi, dtype=np.float64)

    @classmethod
    def from_parameters(cls, method='bayesC', pi=None, gamma=None):
        """
        Build and validate the prior for a given method.

        :param method: One of `bayesN`, `bayesA`, `bayesC` or `bayesR`.
        :param pi: For `bayesC`, the prior inclusion probability (scalar, default 0.01).
        For `bayesR`, either a vector of mixing probabilities (one per component of `gamma`) or a
        scalar inclusion probability split evenly across the non-null components.
        Ignored for `bayesN` and `bayesA`.
        :param gamma: For `bayesR`, the scales of the mixture components.

        :return: A `MarkerEffectPrior` object.
        :raises InvalidConfigError: If the parameters are out of range.
        """

        if method not in BLR_METHODS:
            raise InvalidConfigError(f"Unknown BLR method: {method}. Supported methods: {BLR_METHODS}")

        if method in ('bayesN', 'bayesA'):
            if pi is not None:
                logger.warning(f"The mixing probability `pi` is ignored by {method}.")
            return cls(method, [1.], [1.])

        if method == 'bayesC':
            pi = 0.01 if pi is None else pi
            if iterable(pi) or not 0. <= float(pi) <= 1.:
                raise InvalidConfigError(f"The inclusion probability pi must be a scalar in [0, 1] (got {pi}).")
            return cls(method, [0., 1.], [1. - float(pi), float(pi)])

        gamma = np.asarray(DEFAULT_BAYESR_GAMMA if gamma is None else gamma, dtype=np.float64)

        if gamma.ndim != 1 or len(gamma) < 2:
            raise InvalidConfigError("bayesR requires at least two mixture components (`gamma`).")
        if np.any(gamma < 0.) or not np.all(np.isfinite(gamma)):
            raise InvalidConfigError(f"The component scales gamma must be non-negative (got {gamma}).")

        if pi is None:
            pi = DEFAULT_BAYESR_PI if len(gamma) == len(DEFAULT_BAYESR_PI) else None
            if pi is None:
                raise InvalidConfigError("The mixing probabilities `pi` must be provided for a custom `gamma`.")

        if not iterable(pi):
            p = float(pi)
            if not 0. <= p <= 1.:
                raise InvalidConfigError(f"The inclusion probability pi must be in [0, 1] (got {pi}).")
            non_null = gamma > 0.
            pi = np.where(non_null, p / non_null.sum(), (1. - p) / max((~non_null).sum(), 1))

        pi = np.asarray(pi, dtype=np.float64)

        if pi.shape != gamma.shape:
            raise InvalidConfigError(f"`pi` ({len(pi)}) and `gamma` ({len(gamma)}) must have the same length.")
        if np.any(pi < 0.) or np.any(pi > 1.) or not np.isclose(pi.sum(), 1., atol=1e-6):
            raise InvalidConfigError(f"The mixing probabilities must be in [0, 1] and sum to 1 (got {pi}).")

        return cls(method, gamma, pi / pi.sum())

    @property
    def n_components(self):
        return len(self.gamma)

    @property
    def null_components(self):
        """
        :return: A boolean mask of the zero-variance components.
        """
        return self.gamma == 0.

    @property
    def is_mixture(self):
        return self.method in ('bayesC', 'bayesR')

    @property
    def expected_scale(self):
        """
        :return: The prior expectation of `gamma`, i.e. the fraction of `vb` carried by an average marker.
        """
        return float(np.dot(self.pi, self.gamma))

    def component_variances(self, vb):
        """
        :param vb: The (scalar) marker effect variance.
        :return: The variance of each mixture component.
        """
        return self.gamma * vb

    def initial_components(self, beta):
        """
        Assign an initial component to each marker given initial effects: markers with a non-zero
        effect are assigned to the non-null component with the largest prior probability,
        the others to the null component (or to the only component for `bayesN`/`bayesA`).

        :param beta: An (m,) or (m, t) array of initial effects.
        :return: An integer array of component indices.
        """

        beta = np.asarray(beta)
        if beta.ndim > 1:
            nonzero = np.any(beta != 0., axis=1)
        else:
            nonzero = beta != 0.

        if not self.is_mixture:
            return np.zeros(len(nonzero), dtype=np.int64)

        null = self.null_components
        k_incl = int(np.argmax(np.where(null, -1., self.pi)))
        # A null component without prior mass is never assigned:
        k_null = int(np.argmax(null & (self.pi > 0.))) if (null & (self.pi > 0.)).any() else k_incl

        return np.where(nonzero, k_incl, k_null).astype(np.int64)

    def sample_pi(self, rng, counts):
        """
        Draw the mixing probabilities from their conditional posterior given the
        number of markers assigned to each component (a Dirichlet with unit prior counts;
        a Beta distribution for `bayesC`).

        :param rng: A numpy random `Generator`.
        :param counts: The number of markers assigned to each component.
        :return: The new mixing probabilities.
        """

        counts = np.asarray(counts, dtype=np.float64)

        if self.method == 'bayesC':
            p = rng.beta(counts[1] + 1., counts[0] + 1.)
            return np.array([1. - p, p])

        return rng.dirichlet(counts + 1.)

    def __repr__(self):
        return f"MarkerEffectPrior(method={self.method}, gamma={self.gamma.tolist()}, pi={self.pi.tolist()})"


def validate_chain_parameters(nit, nburn, nthin, update_order, init_effects):
    """
    :raises InvalidConfigError: If the chain length, burn-in, thinning, ordering or
    initialization parameters are invalid, or if no posterior sample would be retained.
    """

    if int(nit) != nit or nit < 1:
        raise InvalidConfigError(f"The number of iterations must be a positive integer (got {nit}).")
    if int(nburn) != nburn or nburn < 0 or nburn >= nit:
        raise InvalidConfigError(f"The burn-in must be an integer in [0, nit) (got {nburn}).")
    if int(nthin) != nthin or nthin < 1:
        raise InvalidConfigError(f"The thinning interval must be a positive integer (got {nthin}).")
    if nit // nthin - nburn // nthin < 1:
        raise InvalidConfigError(f"No posterior samples would be retained with nit={nit}, "
                                 f"nburn={nburn} and nthin={nthin}.")
    if update_order not in UPDATE_ORDERS:
        raise InvalidConfigError(f"Unknown update order: {update_order}. Supported: {UPDATE_ORDERS}")
    if init_effects not in INIT_EFFECTS:
        raise InvalidConfigError(f"Unknown initialization: {init_effects}. Supported: {INIT_EFFECTS}")


def validate_variance_parameters(h2=None, vb=None, ve=None, nub=4., nue=4., ssb_prior=None, sse_prior=None):
    """
    :raises InvalidConfigError: If the heritability guess is outside (0, 1), if the starting
    variances `vb` or `ve` are not positive, or if any of the degrees of freedom or prior
    scales are negative (or non-finite).
    """

    if h2 is not None and not 0. < h2 < 1.:
        raise InvalidConfigError(f"The heritability guess h2 must be in (0, 1) (got {h2}).")

    for name, value in (('vb', vb), ('ve', ve)):
        if value is None:
            continue
        value = np.asarray(value, dtype=np.float64)
        # Covariance matrices only need positive variances on the diagonal:
        variances = np.diag(value) if value.ndim == 2 else value
        if not np.all(np.isfinite(value)) or np.any(variances <= 0.):
            raise InvalidConfigError(f"The variance parameter `{name}` must be positive (got {value}).")

    for name, value in (('ssb_prior', ssb_prior), ('sse_prior', sse_prior)):
        if value is None:
            continue
        value = np.asarray(value, dtype=np.float64)
        if not np.all(np.isfinite(value)) or np.any(value < 0.):
            raise InvalidConfigError(f"The prior scale `{name}` must be non-negative (got {value}).")

    for name, value in (('nub', nub), ('nue', nue)):
        if value is None or not np.isfinite(value) or value <= 0.:
            raise InvalidConfigError(f"The prior degrees of freedom `{name}` must be positive (got {value}).")


def prior_scale(nu, variance):
    """
    The scale of a scaled inverse chi-squared prior with `nu` degrees of freedom
    whose mean equals `variance` (when `nu > 2`).
    """
    if nu > 2.:
        return (nu - 2.) / nu * variance
    return variance
