import numpy as np
import pandas as pd


def effective_sample_size(x):
    """
    Estimate the effective sample size of a Markov chain, using the initial positive
    sequence estimator of Geyer (1992): the autocorrelations are summed in consecutive pairs
    until the first pair with a non-positive sum.

    :param x: A 1D array of draws.
    :return: The effective sample size.
    """

    x = np.asarray(x, dtype=np.float64)
    n = len(x)

    if n < 4:
        return float(n)

    x = x - x.mean()
    var = np.dot(x, x) / n

    if var <= 0.:
        return float(n)

    f = np.fft.rfft(x, n=2 * n)
    acf = np.fft.irfft(f * np.conjugate(f))[:n] / (n * var)

    tau = -1.
    for k in range(0, n - 1, 2):
        pair = acf[k] + acf[k + 1]
        if pair <= 0.:
            break
        tau += 2. * pair

    return float(n / max(tau, 1. / n))


class VarianceComponents(object):
    """
    A snapshot of the global parameters of the sampler at a given iteration.

    :ivar iteration: The iteration number (starting at 1).
    :ivar vb: The marker effect variance (a scalar for single-trait models, the
    marker effect covariance matrix for multi-trait models).
    :ivar ve: The residual variance of each trait.
    :ivar pi: The mixing probabilities of the mixture components.
    :ivar n_nonzero: The number of markers assigned to a non-null component.
    """

    def __init__(self, iteration, vb, ve, pi, n_nonzero):
        self.iteration = iteration
        self.vb = np.array(vb, dtype=np.float64)
        self.ve = np.atleast_1d(np.array(ve, dtype=np.float64))
        self.pi = np.atleast_1d(np.array(pi, dtype=np.float64))
        self.n_nonzero = int(n_nonzero)

    @property
    def n_traits(self):
        return len(self.ve)

    def to_dict(self):
        """
        :return: A flat dictionary of the variance components. For multi-trait models,
        the entries of the covariance matrix are named `vb_<i>_<j>` and the residual
        variances `ve_<i>` (1-based).
        """

        record = {'iteration': self.iteration}

        if self.vb.ndim == 2:
            t = self.vb.shape[0]
            for i in range(t):
                for j in range(i, t):
                    record[f'vb_{i + 1}_{j + 1}'] = float(self.vb[i, j])
            for i in range(t):
                record[f've_{i + 1}'] = float(self.ve[i])
        else:
            record['vb'] = float(self.vb)
            record['ve'] = float(self.ve[0])

        for k, p in enumerate(self.pi):
            record[f'pi_{k}'] = float(p)

        record['n_nonzero'] = self.n_nonzero

        return record

    def __repr__(self):
        return f"VarianceComponents({self.to_dict()})"


class VarianceTrace(object):
    """
    The sequence of `VarianceComponents` snapshots retained during sampling
    (every `nthin`-th iteration, burn-in included).
    """

    def __init__(self, components=None):
        self.components = list(components or [])

    def append(self, vc):
        self.components.append(vc)

    def __len__(self):
        return len(self.components)

    def __getitem__(self, item):
        return self.components[item]

    def __iter__(self):
        return iter(self.components)

    @property
    def iterations(self):
        return np.array([vc.iteration for vc in self.components])

    def to_table(self):
        """
        :return: A pandas DataFrame with one row per retained iteration.
        """
        return pd.DataFrame([vc.to_dict() for vc in self.components])

    def get(self, name):
        """
        :param name: The name of a column of `to_table()` (e.g. `vb`, `ve`, `pi_1`).
        :return: The trace of that quantity as a numpy array.
        """
        return self.to_table()[name].values

    def summary(self, nburn=0):
        """
        Summarize the trace after discarding the snapshots from the first `nburn` iterations.

        :param nburn: The number of burn-in iterations to discard.
        :return: A pandas DataFrame with the mean, standard deviation and
        effective sample size of each quantity.
        """

        table = self.to_table()
        table = table.loc[table['iteration'] > nburn].drop(columns='iteration')

        return pd.DataFrame({
            'mean': table.mean(axis=0),
            'sd': table.std(axis=0),
            'ess': table.apply(lambda col: effective_sample_size(col.values), axis=0)
        })

    def __repr__(self):
        return f"VarianceTrace(n={len(self)})"


class MarkerEffectPosterior(object):
    """
    Posterior summaries of the marker effects, on the scale of standardized genotypes.

    :ivar snps: The SNP rsIDs.
    :ivar mean: The (m, t) posterior mean of the effects.
    :ivar variance: The (m, t) posterior variance of the effects.
    :ivar pip: The (m, t) posterior inclusion probability (the fraction of retained iterations in which
    the marker was assigned to a non-null component). For multi-trait models, inclusion is joint across traits.
    :ivar n_samples: The number of retained posterior samples.
    :ivar traits: The trait names.
    :ivar effect_covariance: For multi-trait models, the posterior mean of the marker effect covariance matrix.
    """

    def __init__(self, snps, mean, variance, pip, n_samples, traits=None, effect_covariance=None):

        self.snps = np.asarray(snps)
        self.mean = np.asarray(mean, dtype=np.float64).reshape(len(self.snps), -1)
        self.variance = np.asarray(variance, dtype=np.float64).reshape(self.mean.shape)
        self.pip = np.broadcast_to(np.asarray(pip, dtype=np.float64).reshape(len(self.snps), -1),
                                   self.mean.shape).copy()
        self.n_samples = n_samples
        self.traits = list(traits) if traits is not None else [f'trait_{i + 1}' for i in range(self.mean.shape[1])]
        self.effect_covariance = effect_covariance

    @property
    def m(self):
        return len(self.snps)

    @property
    def n_traits(self):
        return self.mean.shape[1]

    @property
    def effect_correlation(self):
        """
        :return: The correlation matrix derived from the posterior mean of the marker effect covariance
        (None for single-trait models).
        """
        if self.effect_covariance is None:
            return None
        sd = np.sqrt(np.diag(self.effect_covariance))
        return self.effect_covariance / np.outer(sd, sd)

    @classmethod
    def concatenate(cls, posteriors):
        """
        Concatenate the posteriors of disjoint sets of markers (e.g. independent per-chromosome chains).
        """
        posteriors = list(posteriors)
        return cls(np.concatenate([p.snps for p in posteriors]),
                   np.concatenate([p.mean for p in posteriors]),
                   np.concatenate([p.variance for p in posteriors]),
                   np.concatenate([p.pip for p in posteriors]),
                   n_samples=posteriors[0].n_samples,
                   traits=posteriors[0].traits)

    def to_table(self):
        """
        :return: A pandas DataFrame with the SNP rsID and, per trait, the posterior mean (`STD_BETA`),
        the posterior variance (`VAR`) and the inclusion probability (`PIP`). For multi-trait models, the
        columns are suffixed by the trait name.
        """

        table = pd.DataFrame({'SNP': self.snps})

        for i, trait in enumerate(self.traits):
            suffix = '' if self.n_traits == 1 else f'_{trait}'
            table['STD_BETA' + suffix] = self.mean[:, i]
            table['VAR' + suffix] = self.variance[:, i]
            table['PIP' + suffix] = self.pip[:, i]

        return table

    def __len__(self):
        return self.m

    def __repr__(self):
        return f"MarkerEffectPosterior(m={self.m}, n_traits={self.n_traits}, n_samples={self.n_samples})"
