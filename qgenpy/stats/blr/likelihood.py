"""
Data models for the Gibbs sampler. A data model holds the sufficient statistics
of the regression `y = X b + e` for standardized genotypes and tracks the
"residual" quantities needed to compute, for each marker j, the right-hand side

    rhs_j = x_j'(y - X_{-j} b_{-j}) = x_j'y - sum_{k != j} x_j'x_k b_k

without a full pass over the data. After the effect of marker j changes by `delta`,
the residual bookkeeping is updated before moving to the next marker.

Both models are multi-trait: arrays are shaped (markers, traits).
"""

import numpy as np


class SummaryStatLikelihood(object):
    """
    The likelihood of the standardized marginal effects (summary statistics) given the
    marker effects, through the LD matrix. With standardized genotypes and phenotypes:

        x_j'y = n_j * b_j,    x_j'x_k = sqrt(n_j * n_k) * r_jk

    where `b_j` is the standardized marginal effect and `r_jk` the LD between markers j and k.
    The residual vector `r = X'y - X'X b` is updated using only the LD neighbors of
    the marker whose effect changed.

    :ivar ld: A symmetric `scipy.sparse.csr_matrix` of LD (with a unit diagonal).
    :ivar wy: The (m, t) matrix of x_j'y.
    :ivar ww: The (m, t) matrix of x_j'x_j.
    :ivar r: The (m, t) matrix of residual products x_j'(y - Xb).
    :ivar nobs: The number of observations per trait.
    :ivar yy: y'y per trait.
    :ivar vy: The phenotypic variance per trait (1 for standardized phenotypes).
    """

    def __init__(self, ld, std_beta, n):
        """
        :param ld: A symmetric `scipy.sparse.csr_matrix` (m x m) of LD with a unit diagonal.
        :param std_beta: An (m,) or (m, t) array of standardized marginal effects.
        :param n: An (m,) or (m, t) array of per-marker sample sizes.
        """

        std_beta = np.asarray(std_beta, dtype=np.float64)
        if std_beta.ndim == 1:
            std_beta = std_beta[:, None]

        n = np.asarray(n, dtype=np.float64)
        if n.ndim == 1:
            n = n[:, None]
        n = np.broadcast_to(n, std_beta.shape).astype(np.float64)

        self.ld = ld.tocsr()
        self.ld.sort_indices()
        self.sqrt_n = np.sqrt(n)
        self.ww = n
        self.wy = n * std_beta
        self.r = self.wy.copy()

        self.nobs = np.median(n, axis=0)
        self.vy = np.ones(std_beta.shape[1])
        self.yy = self.nobs * self.vy

    @property
    def m(self):
        return self.wy.shape[0]

    @property
    def n_traits(self):
        return self.wy.shape[1]

    def initialize(self, beta):
        """
        Set the residual bookkeeping for initial effects `beta` (m, t): r = X'y - X'X beta.
        """
        self.r = self.wy - self.sqrt_n * (self.ld @ (self.sqrt_n * beta))

    def rhs(self, j, beta_j):
        return self.r[j] + self.ww[j] * beta_j

    def update(self, j, delta):
        """
        Account for a change `delta` (t,) in the effect(s) of marker j.
        """
        start, end = self.ld.indptr[j], self.ld.indptr[j + 1]
        idx = self.ld.indices[start:end]
        vals = self.ld.data[start:end]
        self.r[idx] -= (vals[:, None] * self.sqrt_n[idx]) * (self.sqrt_n[j] * delta)

    def sse(self, beta):
        """
        :return: The residual sum of squares per trait, (y - Xb)'(y - Xb) = y'y - b'X'y - b'r.
        """
        return self.yy - (beta * self.wy).sum(axis=0) - (beta * self.r).sum(axis=0)

    def is_finite(self):
        return bool(np.all(np.isfinite(self.r)))


class IndividualLikelihood(object):
    """
    The likelihood of the phenotype(s) given the marker effects, using an in-memory
    matrix of standardized genotypes. The residual vector `e = y - Xb` is updated after
    every change in a marker effect.

    :ivar x: The (n, m) matrix of standardized genotypes.
    :ivar y: The (n, t) matrix of centered phenotypes.
    :ivar e: The (n, t) matrix of residuals.
    """

    def __init__(self, x, y):
        """
        :param x: An (n, m) matrix of standardized genotypes (without missing values).
        :param y: An (n,) or (n, t) array of centered phenotypes (without missing values).
        """

        y = np.asarray(y, dtype=np.float64)
        if y.ndim == 1:
            y = y[:, None]

        self.x = np.asarray(x, dtype=np.float64)
        self.y = y
        self.e = y.copy()

        self.wy = self.x.T.dot(y)
        self.ww = np.broadcast_to((self.x ** 2).sum(axis=0)[:, None], self.wy.shape).astype(np.float64)

        self.nobs = np.repeat(float(y.shape[0]), y.shape[1])
        self.yy = (y ** 2).sum(axis=0)
        self.vy = y.var(axis=0)

    @property
    def m(self):
        return self.x.shape[1]

    @property
    def n_traits(self):
        return self.y.shape[1]

    def initialize(self, beta):
        self.e = self.y - self.x.dot(beta)

    def rhs(self, j, beta_j):
        return self.x[:, j].dot(self.e) + self.ww[j] * beta_j

    def update(self, j, delta):
        self.e -= np.outer(self.x[:, j], delta)

    def sse(self, beta):
        return (self.e ** 2).sum(axis=0)

    def is_finite(self):
        return bool(np.all(np.isfinite(self.e)))


def mixture_log_likelihood(rhs, ww, ve, component_var, log_pi):
    """
    The (unnormalized) log posterior probability that a marker belongs to each mixture
    component, after integrating out its effect:

        log L_k = -0.5 * log(v_k * lhs_k / ve) + 0.5 * rhs^2 / (ve * lhs_k) + log(pi_k),
        lhs_k = ww + ve / v_k

    Zero-variance components contribute `log(pi_k)` only.

    :param rhs: The right-hand side x_j'(y - X_{-j} b_{-j}).
    :param ww: x_j'x_j.
    :param ve: The residual variance.
    :param component_var: The variance of each component (K,).
    :param log_pi: The log mixing probabilities (K,).

    :return: The log likelihood of each component (K,).
    """

    with np.errstate(divide='ignore', invalid='ignore', over='ignore'):
        lhs = ww + ve / component_var
        loglik = -0.5 * np.log(component_var * lhs / ve) + 0.5 * rhs ** 2 / (ve * lhs)

    return np.where(component_var > 0., loglik, 0.) + log_pi


def sample_component(rng, loglik):
    """
    Draw a component index with probability proportional to `exp(loglik)`.
    """
    p = np.exp(loglik - np.max(loglik))
    cum_p = np.cumsum(p)
    return min(int(np.searchsorted(cum_p, rng.random() * cum_p[-1], side='right')), len(p) - 1)
