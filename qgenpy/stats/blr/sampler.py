import logging
import numpy as np
import pandas as pd
from joblib import Parallel, delayed
from tqdm import tqdm

from .priors import (MarkerEffectPrior, MULTI_TRAIT_METHODS, sample_scaled_inv_chi2, prior_scale,
                     validate_chain_parameters, validate_variance_parameters)
from .likelihood import SummaryStatLikelihood, IndividualLikelihood, mixture_log_likelihood, sample_component
from .results import MarkerEffectPosterior, VarianceComponents, VarianceTrace
from ...exceptions import InvalidConfigError, NotBuiltError, NumericInstabilityError
from ...utils.compute_utils import lookup_index
from ...utils.system_utils import available_cpu

logger = logging.getLogger(__name__)


class SamplerState(object):
    """
    The current state of a Gibbs chain.

    :ivar beta: The (m, t) marker effects.
    :ivar components: The mixture component of each marker.
    :ivar vb: The marker effect variance (scalar), or covariance matrix (t x t) for multi-trait models.
    :ivar vbj: The marker-specific effect variances (`bayesA` only).
    :ivar ve: The residual variance of each trait.
    :ivar pi: The mixing probabilities.
    """

    def __init__(self, beta, components, vb, ve, pi, vbj=None):
        self.beta = beta
        self.components = components
        self.vb = vb
        self.vbj = vbj
        self.ve = ve
        self.pi = pi

    def n_nonzero(self, prior):
        return int((~prior.null_components[self.components]).sum())

    def variance_components(self, iteration, prior):
        return VarianceComponents(iteration, self.vb, self.ve, self.pi, self.n_nonzero(prior))

    def snapshot(self, iteration):
        """
        :return: A dictionary with a copy of the state (used to report the last valid state).
        """
        return {
            'iteration': iteration,
            'beta': self.beta.copy(),
            'components': self.components.copy(),
            'vb': np.copy(self.vb),
            'vbj': None if self.vbj is None else self.vbj.copy(),
            've': self.ve.copy(),
            'pi': self.pi.copy()
        }


class BayesianMarkerSampler(object):
    """
    A Gibbs sampler for Bayesian Linear Regression (BLR) models of marker effects.

    The sampler can be fit to GWAS summary statistics with an `LDStore` (`fit`) or to
    individual-level genotype and phenotype data (`fit_individual`). In the summary statistics
    model, the marker effects are updated using only the sparse LD neighborhood of each marker:
    the products `X'(y - Xb)` are kept up to date after every change in a marker effect.

    Each iteration consists of:

    1. A pass over the markers (in a fixed order, or in a random order drawn from the
    seeded generator), drawing the mixture component of each marker (for `bayesC`/`bayesR`)
    and then its effect conditional on the component.
    2. Draws of the marker effect variance(s), the residual variance(s) and the mixing
    probabilities from their conditional posteriors.

    Any of these updates can be frozen with the `update_*` flags. Effects start at zero
    (`init_effects='zero'`) or at the standardized marginal effects (`init_effects='marginal'`).
    By default, the marker effect variance starts at `h2 * var(y) / (m * E[gamma])` and the
    residual variance at `(1 - h2) * var(y)`.

    Variance components are recorded every `nthin` iterations (`trace`); posterior means,
    variances and inclusion probabilities of the marker effects are averaged over the recorded
    iterations after the burn-in (`posterior`).

    !!! seealso "See Also"
        * [gbayes][qgenpy.stats.blr.sampler.gbayes]
        * [MarkerEffectPrior][qgenpy.stats.blr.priors.MarkerEffectPrior]

    :ivar prior: The `MarkerEffectPrior`.
    :ivar posterior: The `MarkerEffectPosterior` after fitting.
    :ivar trace: The `VarianceTrace` after fitting (a dictionary of traces, keyed by chromosome,
    for independent per-chromosome chains).
    :ivar snp_table: The table of modeled variants, with the scale to convert standardized effects
    to per-allele effects.
    """

    def __init__(self,
                 ld_store=None,
                 method='bayesC',
                 nit=1000,
                 nburn=0,
                 nthin=1,
                 pi=None,
                 gamma=None,
                 h2=0.5,
                 vb=None,
                 ve=None,
                 nub=4.,
                 nue=4.,
                 ssb_prior=None,
                 sse_prior=None,
                 update_b=True,
                 update_vb=True,
                 update_ve=True,
                 update_pi=True,
                 update_order='fixed',
                 init_effects='zero',
                 seed=None,
                 per_chromosome=False,
                 threads=1,
                 verbose=True):
        """
        Initialize the sampler. All the parameters are validated here.

        :param ld_store: An `LDStore` object (required to fit summary statistics).
        :param method: The prior on the marker effects: `bayesN`, `bayesA`, `bayesC` or `bayesR`.
        :param nit: The number of iterations.
        :param nburn: The number of burn-in iterations excluded from the posterior summaries.
        :param nthin: Record the state every `nthin` iterations.
        :param pi: The prior inclusion probability (`bayesC`) or the mixing probabilities (`bayesR`).
        :param gamma: The scales of the mixture components (`bayesR`).
        :param h2: The prior guess of the proportion of phenotypic variance explained by the markers.
        :param vb: The initial marker effect variance (per trait).
        :param ve: The initial residual variance (per trait).
        :param nub: The prior degrees of freedom of the marker effect variance.
        :param nue: The prior degrees of freedom of the residual variance.
        :param ssb_prior: The prior scale of the marker effect variance.
        :param sse_prior: The prior scale of the residual variance.
        :param update_b: If False, keep the marker effects (and components) at their initial values.
        :param update_vb: If False, keep the marker effect variance at its initial value.
        :param update_ve: If False, keep the residual variance at its initial value.
        :param update_pi: If False, keep the mixing probabilities at their prior values.
        :param update_order: `fixed` (genomic order) or `random` (a new permutation every iteration).
        :param init_effects: `zero` or `marginal`.
        :param seed: The seed of the random number generator.
        :param per_chromosome: If True, run independent chains for each chromosome.
        :param threads: The number of chains run in parallel (with `per_chromosome=True`).
        Set to -1 to use all the available cores but one.
        :param verbose: Show progress bars.

        :raises InvalidConfigError: If any of the parameters is invalid.
        """

        self.prior = MarkerEffectPrior.from_parameters(method, pi=pi, gamma=gamma)

        validate_chain_parameters(nit, nburn, nthin, update_order, init_effects)
        validate_variance_parameters(h2=h2, vb=vb, ve=ve, nub=nub, nue=nue,
                                     ssb_prior=ssb_prior, sse_prior=sse_prior)

        if h2 is None and (vb is None or ve is None):
            raise InvalidConfigError("A heritability guess `h2` is required unless both `vb` and `ve` are provided.")

        if threads == -1:
            threads = available_cpu()
        if int(threads) != threads or threads < 1:
            raise InvalidConfigError(f"The number of threads must be a positive integer (got {threads}).")

        self.ld_store = ld_store

        self.nit = int(nit)
        self.nburn = int(nburn)
        self.nthin = int(nthin)
        self.h2 = h2
        self.vb = vb
        self.ve = ve
        self.nub = float(nub)
        self.nue = float(nue)
        self.ssb_prior = ssb_prior
        self.sse_prior = sse_prior

        self.update_b = update_b
        self.update_vb = update_vb
        self.update_ve = update_ve
        self.update_pi = update_pi
        self.update_order = update_order
        self.init_effects = init_effects

        self.seed = seed
        self.per_chromosome = per_chromosome
        self.threads = int(threads)
        self.verbose = verbose

        self.posterior = None
        self.trace = None
        self.snp_table = None

    @property
    def method(self):
        return self.prior.method

    def validate_n_traits(self, n_traits):
        """
        :raises InvalidConfigError: If the method does not support several traits, or the prior degrees
        of freedom of the effect covariance are too small.
        """

        if n_traits > 1:
            if self.method not in MULTI_TRAIT_METHODS:
                raise InvalidConfigError(f"Multi-trait models are only supported for {MULTI_TRAIT_METHODS} "
                                         f"(got {self.method}).")
            if self.nub <= n_traits - 1:
                raise InvalidConfigError(f"The prior degrees of freedom `nub` must exceed {n_traits - 1} "
                                         f"for a model with {n_traits} traits (got {self.nub}).")

    # -----------------------------------------------------------------------
    # Data preparation

    def prepare_sumstats(self, sumstats, traits=None):
        """
        Align the summary statistics of one or several traits on their shared variants and
        compute the standardized marginal effects, sample sizes and per-allele scales.

        :param sumstats: A `SumstatsTable` or a list of `SumstatsTable` objects (one per trait).
        :param traits: The names of the traits.

        :return: A tuple of (snp_table, std_beta (m, t), n (m, t)).
        :raises MissingColumnError: If any table lacks the `SNP`, `Z` (or `BETA` and `SE`) or `N` columns.
        """

        tables = list(sumstats) if isinstance(sumstats, (list, tuple)) else [sumstats]

        for ss in tables:
            ss.validate_columns(['SNP', 'Z', 'N'], context=f"required to fit {self.method}")

        snps = tables[0].snps.astype(str)
        for ss in tables[1:]:
            snps = snps[lookup_index(ss.snps, snps)[1]]

        if len(tables) > 1:
            logger.info(f"> {len(snps)} variants are shared by the summary statistics of {len(tables)} traits.")

        id_cols = [c for c in ('CHR', 'SNP', 'A1', 'A2') if c in tables[0].table.columns]
        pos0, _ = lookup_index(tables[0].snps, snps)
        snp_table = tables[0].table.iloc[pos0][id_cols].reset_index(drop=True)

        if 'CHR' not in snp_table.columns:
            if self.ld_store is None:
                snp_table['CHR'] = None
            else:
                snp_table['CHR'] = self.ld_store.assign_chromosomes(snps)

        traits = list(traits) if traits is not None else [f'trait_{i + 1}' for i in range(len(tables))]

        std_beta = np.zeros((len(snps), len(tables)))
        n = np.zeros((len(snps), len(tables)))

        for i, ss in enumerate(tables):
            pos, _ = lookup_index(ss.snps, snps)
            z = ss.z_score[pos]
            n_i = np.asarray(ss.n, dtype=np.float64)[pos]
            std_beta[:, i] = ss.get_snp_pseudo_corr()[pos]
            n[:, i] = n_i

            suffix = '' if len(tables) == 1 else f'_{traits[i]}'
            se = ss.se
            if se is not None:
                snp_table['SCALE' + suffix] = se[pos] * np.sqrt(n_i - 1. + z ** 2)

        return snp_table, std_beta, n, traits

    def aligned_ld(self, chromosome, snps):
        """
        :return: The LD matrix (with a unit diagonal) between `snps` on a chromosome. Variants without
        LD information are treated as independent of all others.
        """

        from scipy.sparse import identity

        if chromosome is None or pd.isnull(chromosome):
            logger.warning(f"{len(snps)} variants are absent from the LD matrices; "
                           f"they are modeled as independent of all other variants.")
            return identity(len(snps), format='csr')

        try:
            return self.ld_store.get_aligned_ld(chromosome, snps, fill_diagonal=True)
        except NotBuiltError:
            logger.warning(f"No LD matrix for chromosome {chromosome}: its {len(snps)} variants "
                           f"are modeled as independent of all other variants.")
            return identity(len(snps), format='csr')

    # -----------------------------------------------------------------------
    # Fitting

    def fit(self, sumstats, traits=None):
        """
        Fit the model to GWAS summary statistics, using the LD matrices of the `LDStore`.

        :param sumstats: A `SumstatsTable` (or a list of them for multi-trait `bayesN`/`bayesC` models).
        :param traits: Optional names for the traits.

        :return: The fitted sampler (with `posterior`, `trace` and `snp_table` set).
        :raises InvalidConfigError: If no `LDStore` was provided, or the model does not support several traits.
        :raises MissingColumnError: If the summary statistics lack the required columns.
        :raises NumericInstabilityError: If the chain produces non-finite values or a variance collapses.
        """

        from scipy.sparse import block_diag

        if self.ld_store is None:
            raise InvalidConfigError("An LDStore is required to fit summary statistics.")

        n_traits = len(sumstats) if isinstance(sumstats, (list, tuple)) else 1
        self.validate_n_traits(n_traits)

        snp_table, std_beta, n, traits = self.prepare_sumstats(sumstats, traits=traits)

        # Group the variants by chromosome, keeping their relative order:
        chrom_key = snp_table['CHR'].astype(object).where(snp_table['CHR'].notnull(), None)
        groups = {}
        for i, c in enumerate(chrom_key.values):
            groups.setdefault(c, []).append(i)

        order = np.concatenate([np.array(idx, dtype=np.int64) for idx in groups.values()])
        self.snp_table = snp_table.iloc[order].reset_index(drop=True)

        blocks, start = {}, 0
        for c, idx in groups.items():
            blocks[c] = (start, start + len(idx))
            start += len(idx)

        std_beta, n = std_beta[order], n[order]
        snps = self.snp_table['SNP'].values
        m_total = len(snps)

        logger.info(f"> Fitting {self.method} to the summary statistics of {m_total} variants "
                    f"({len(blocks)} chromosome(s), {n_traits} trait(s))...")

        if self.per_chromosome and len(blocks) > 1:

            seeds = np.random.SeedSequence(self.seed).spawn(len(blocks))

            likelihoods = {
                c: SummaryStatLikelihood(self.aligned_ld(c, snps[s:e]), std_beta[s:e], n[s:e])
                for c, (s, e) in blocks.items()
            }

            if self.threads > 1:
                results = Parallel(n_jobs=min(self.threads, len(blocks)))(
                    delayed(run_gibbs_chain)(self, likelihoods[c], snps[s:e], seed, m_total, traits,
                                             f'Chromosome {c}')
                    for (c, (s, e)), seed in zip(blocks.items(), seeds)
                )
            else:
                results = [run_gibbs_chain(self, likelihoods[c], snps[s:e], seed, m_total, traits,
                                           f'Chromosome {c}')
                           for (c, (s, e)), seed in zip(blocks.items(), seeds)]

            self.posterior = MarkerEffectPosterior.concatenate([post for post, _ in results])
            self.trace = {c: trace for c, (_, trace) in zip(blocks.keys(), results)}

        else:

            ld = block_diag([self.aligned_ld(c, snps[s:e]) for c, (s, e) in blocks.items()], format='csr')
            likelihood = SummaryStatLikelihood(ld, std_beta, n)

            self.posterior, self.trace = run_gibbs_chain(self, likelihood, snps,
                                                         np.random.SeedSequence(self.seed), m_total, traits,
                                                         f'Sampling ({self.method})')

        return self

    def fit_individual(self, genotype, phenotype=None, traits=None):
        """
        Fit the model to individual-level data. The genotypes are read into memory and
        standardized (missing calls are mean-imputed), and the phenotype(s) are standardized.
        A single chain is run for all chromosomes.

        :param genotype: A `GenotypeStore` or a `GenotypeMatrix`.
        :param phenotype: An (n,) or (n, t) array of phenotypes, in the order of the sample table.
        If None, the `phenotype` column of the sample table is used.
        :param traits: Optional names for the traits.

        :return: The fitted sampler (with `posterior`, `trace` and `snp_table` set).
        :raises InvalidConfigError: If the phenotypes do not match the genotypes or contain missing values.
        :raises NumericInstabilityError: If the chain produces non-finite values or a variance collapses.
        """

        from ..transforms.genotype import standardize
        from ...GenotypeStore import GenotypeStore

        if isinstance(genotype, GenotypeStore):
            matrices = [genotype[c] for c in genotype.chromosomes]
            sample_table = genotype.sample_table
        else:
            matrices = [genotype]
            sample_table = genotype.sample_table

        if phenotype is None:
            phenotype = sample_table.phenotype

        y = np.asarray(phenotype, dtype=np.float64)
        if y.ndim == 1:
            y = y[:, None]

        n_traits = y.shape[1]
        self.validate_n_traits(n_traits)

        if y.shape[0] != sample_table.n:
            raise InvalidConfigError(f"The number of phenotype values ({y.shape[0]}) does not match "
                                     f"the number of individuals ({sample_table.n}).")
        if not np.all(np.isfinite(y)):
            raise InvalidConfigError("The phenotype contains missing or non-finite values.")

        logger.info("> Reading the genotype matrix into memory...")

        x = np.hstack([g.read_columns() for g in matrices])
        self.snp_table = pd.concat([g.get_snp_table(['CHR', 'SNP', 'A1', 'A2']) for g in matrices],
                                   ignore_index=True)

        with np.errstate(invalid='ignore'):
            sd_x = np.nanstd(x, axis=0)
        sd_y = y.std(axis=0)

        if np.any(sd_y <= 0.):
            raise InvalidConfigError("The phenotype has zero variance.")

        x = standardize(x)
        y = (y - y.mean(axis=0)) / sd_y

        traits = list(traits) if traits is not None else [f'trait_{i + 1}' for i in range(n_traits)]

        with np.errstate(divide='ignore', invalid='ignore'):
            for i, trait in enumerate(traits):
                suffix = '' if n_traits == 1 else f'_{trait}'
                self.snp_table['SCALE' + suffix] = np.where(sd_x > 0., sd_y[i] / sd_x, 0.)

        logger.info(f"> Fitting {self.method} to individual-level data "
                    f"({x.shape[0]} individuals, {x.shape[1]} variants, {n_traits} trait(s))...")

        likelihood = IndividualLikelihood(x, y)

        self.posterior, self.trace = run_gibbs_chain(self, likelihood, self.snp_table['SNP'].values,
                                                     np.random.SeedSequence(self.seed), x.shape[1], traits,
                                                     f'Sampling ({self.method})')

        return self

    # -----------------------------------------------------------------------
    # The Gibbs chain

    def per_trait(self, value, n_traits, default):
        if value is None:
            return np.asarray(default, dtype=np.float64)
        return np.broadcast_to(np.asarray(value, dtype=np.float64), (n_traits,)).copy()

    def initialize_state(self, likelihood, m_total):
        """
        Set up the initial state of a chain and the prior scales of the variance components.

        :param likelihood: The data model of the chain.
        :param m_total: The total number of variants in the model (used to scale the prior
        variance of the marker effects when chains are run per chromosome).

        :return: A `SamplerState`.
        """

        m, t = likelihood.m, likelihood.n_traits
        vy = likelihood.vy
        # Only used for the defaults, i.e. when `vb` or `ve` are not set:
        h2 = 0.5 if self.h2 is None else self.h2

        scale = self.prior.expected_scale
        if scale <= 0.:
            scale = 1.

        if self.vb is not None and np.ndim(self.vb) == 2:
            vb = np.diag(np.asarray(self.vb, dtype=np.float64)).copy()
        else:
            vb = self.per_trait(self.vb, t, h2 * vy / (m_total * scale))
        ve = self.per_trait(self.ve, t, (1. - h2) * vy)

        self._ssb_prior = self.per_trait(self.ssb_prior, t, [prior_scale(self.nub, v) for v in vb])
        self._sse_prior = self.per_trait(self.sse_prior, t, [prior_scale(self.nue, v) for v in ve])

        if self.init_effects == 'marginal':
            beta = likelihood.wy / likelihood.ww
        else:
            beta = np.zeros((m, t))

        if t > 1:
            if self.vb is not None and np.ndim(self.vb) == 2:
                state_vb = np.array(self.vb, dtype=np.float64)
            else:
                state_vb = np.diag(vb)
        else:
            state_vb = float(vb[0])

        vbj = np.full(m, float(vb[0])) if self.method == 'bayesA' else None

        return SamplerState(beta=beta,
                            components=self.prior.initial_components(beta),
                            vb=state_vb,
                            ve=ve,
                            pi=self.prior.pi.copy(),
                            vbj=vbj)

    def sample_marker_effects(self, state, likelihood, order, rng):
        """
        One single-site Gibbs pass over the markers of a single-trait model.
        """

        beta = state.beta[:, 0]
        ve = state.ve[0]

        with np.errstate(divide='ignore'):
            log_pi = np.log(state.pi)

        active = np.where(state.pi > 0.)[0]
        draw_component = self.prior.is_mixture and len(active) > 1

        component_var = self.prior.component_variances(state.vb)

        for j in order:

            if state.vbj is not None:
                component_var = np.array([state.vbj[j]])

            rhs = likelihood.rhs(j, beta[j])[0]
            ww = likelihood.ww[j, 0]

            if draw_component:
                k = sample_component(rng, mixture_log_likelihood(rhs, ww, ve, component_var, log_pi))
            else:
                k = active[0] if len(active) > 0 else 0

            v = component_var[k]

            if v > 0.:
                lhs = ww + ve / v
                b_new = rng.normal(rhs / lhs, np.sqrt(ve / lhs))
            else:
                b_new = 0.

            delta = b_new - beta[j]
            if delta != 0.:
                likelihood.update(j, np.array([delta]))
                beta[j] = b_new

            state.components[j] = k

    def sample_marker_effects_multi(self, state, likelihood, order, rng):
        """
        One single-site Gibbs pass over the markers of a multi-trait model: the effects of
        a marker on all traits are drawn jointly from a multivariate normal, and (for `bayesC`)
        inclusion is joint across traits.
        """

        t = likelihood.n_traits
        ve = state.ve

        sb_inv = np.linalg.inv(state.vb)
        _, logdet_sb = np.linalg.slogdet(state.vb)

        p_incl = 1. - state.pi[self.prior.null_components].sum() if self.prior.is_mixture else 1.
        k_incl = int(np.argmax(~self.prior.null_components))
        k_null = int(np.argmax(self.prior.null_components))
        draw_inclusion = self.prior.is_mixture and 0. < p_incl < 1.

        for j in order:

            rhs = likelihood.rhs(j, state.beta[j])
            d = rhs / ve
            prec = np.diag(likelihood.ww[j] / ve) + sb_inv
            cov = np.linalg.inv(prec)
            mu = cov.dot(d)

            if draw_inclusion:
                _, logdet_prec = np.linalg.slogdet(prec)
                loglik = np.array([np.log(1. - p_incl),
                                   -0.5 * logdet_sb - 0.5 * logdet_prec + 0.5 * d.dot(mu) + np.log(p_incl)])
                included = sample_component(rng, loglik) == 1
            else:
                included = p_incl > 0.

            if included:
                b_new = mu + np.linalg.cholesky(cov).dot(rng.standard_normal(t))
            else:
                b_new = np.zeros(t)

            delta = b_new - state.beta[j]
            if np.any(delta != 0.):
                likelihood.update(j, delta)
                state.beta[j] = b_new

            state.components[j] = k_incl if included else k_null

    def sample_hyperparameters(self, state, likelihood, rng):
        """
        Draw the marker effect variance(s), the residual variance(s) and the mixing
        probabilities from their conditional posteriors (unless frozen).
        """

        t = likelihood.n_traits
        gamma = self.prior.gamma[state.components]
        included = gamma > 0.

        if self.update_vb:
            if t > 1:
                from scipy.stats import invwishart
                b_inc = state.beta[included]
                scale = b_inc.T.dot(b_inc) + self.nub * np.diag(self._ssb_prior)
                state.vb = np.atleast_2d(invwishart.rvs(df=included.sum() + self.nub, scale=scale,
                                                        random_state=rng))
            elif state.vbj is not None:
                state.vbj = sample_scaled_inv_chi2(rng, 1. + self.nub,
                                                   state.beta[:, 0] ** 2 + self.nub * self._ssb_prior[0],
                                                   size=likelihood.m)
                state.vb = float(state.vbj.mean())
            else:
                ssb = (state.beta[included, 0] ** 2 / gamma[included]).sum()
                state.vb = float(sample_scaled_inv_chi2(rng, included.sum() + self.nub,
                                                        ssb + self.nub * self._ssb_prior[0]))

        if self.update_ve:
            sse = likelihood.sse(state.beta)
            state.ve = np.atleast_1d(sample_scaled_inv_chi2(rng, likelihood.nobs + self.nue,
                                                            sse + self.nue * self._sse_prior))

        if self.update_pi and self.prior.is_mixture:
            counts = np.bincount(state.components, minlength=self.prior.n_components)
            state.pi = self.prior.sample_pi(rng, counts)

    def check_state(self, state, likelihood, iteration, last_valid_state):
        """
        :raises NumericInstabilityError: If any quantity of the state is non-finite or a variance collapsed.
        """

        problems = []

        if not np.all(np.isfinite(state.beta)):
            problems.append("marker effects are not finite")
        if not likelihood.is_finite():
            problems.append("residuals are not finite")
        if not np.all(np.isfinite(state.ve)) or np.any(state.ve <= 0.):
            problems.append(f"residual variance collapsed or is not finite ({state.ve})")

        vb = np.asarray(state.vb)
        if vb.ndim == 2:
            if not np.all(np.isfinite(vb)) or np.min(np.linalg.eigvalsh(vb)) <= 0.:
                problems.append("marker effect covariance is not positive definite")
        elif not np.isfinite(vb) or vb <= 0.:
            problems.append(f"marker effect variance collapsed or is not finite ({vb})")

        if state.vbj is not None and (not np.all(np.isfinite(state.vbj)) or np.any(state.vbj <= 0.)):
            problems.append("marker-specific variances collapsed or are not finite")

        if not np.all(np.isfinite(state.pi)):
            problems.append("mixing probabilities are not finite")

        if len(problems) > 0:
            raise NumericInstabilityError(f"Numeric instability at iteration {iteration}: " + "; ".join(problems),
                                          iteration=iteration,
                                          last_valid_state=last_valid_state)

    def sample(self, likelihood, snps, seed_seq, m_total, traits=None, desc='Sampling'):
        """
        Run a Gibbs chain.

        :param likelihood: The data model (`SummaryStatLikelihood` or `IndividualLikelihood`).
        :param snps: The SNP rsIDs of the markers in the data model.
        :param seed_seq: A `numpy.random.SeedSequence` for the random number generator of the chain.
        :param m_total: The total number of markers in the model.
        :param traits: The trait names.
        :param desc: The label of the progress bar.

        :return: A tuple of (`MarkerEffectPosterior`, `VarianceTrace`).
        :raises NumericInstabilityError: If the chain produces non-finite values or a variance collapses.
        """

        rng = np.random.default_rng(seed_seq)

        m, t = likelihood.m, likelihood.n_traits

        state = self.initialize_state(likelihood, m_total)
        likelihood.initialize(state.beta)

        trace = VarianceTrace()

        sum_b = np.zeros((m, t))
        sum_b2 = np.zeros((m, t))
        sum_incl = np.zeros(m)
        sum_vb = np.zeros_like(np.atleast_2d(state.vb), dtype=np.float64)
        n_samples = 0

        last_valid_state = state.snapshot(0)
        null = self.prior.null_components

        for it in tqdm(range(1, self.nit + 1), total=self.nit, desc=desc, disable=not self.verbose):

            if self.update_order == 'random':
                order = rng.permutation(m)
            else:
                order = np.arange(m)

            if self.update_b:
                if t > 1:
                    self.sample_marker_effects_multi(state, likelihood, order, rng)
                else:
                    self.sample_marker_effects(state, likelihood, order, rng)

            self.sample_hyperparameters(state, likelihood, rng)
            self.check_state(state, likelihood, it, last_valid_state)

            if it % self.nthin == 0:
                trace.append(state.variance_components(it, self.prior))

                if it > self.nburn:
                    sum_b += state.beta
                    sum_b2 += state.beta ** 2
                    sum_incl += ~null[state.components]
                    sum_vb += np.atleast_2d(state.vb)
                    n_samples += 1

            last_valid_state = state.snapshot(it)

        mean = sum_b / n_samples
        variance = np.maximum(sum_b2 / n_samples - mean ** 2, 0.)

        posterior = MarkerEffectPosterior(snps, mean, variance, (sum_incl / n_samples)[:, None],
                                          n_samples=n_samples,
                                          traits=traits,
                                          effect_covariance=(sum_vb / n_samples) if t > 1 else None)

        return posterior, trace

    # -----------------------------------------------------------------------
    # Output

    def to_table(self):
        """
        :return: A pandas DataFrame with the modeled variants (`CHR`, `SNP`, `A1`, `A2`), the posterior
        mean of the standardized effects (`STD_BETA`), the per-allele effects (`BETA`, when the scale is
        known), the posterior variance (`VAR`) and the posterior inclusion probability (`PIP`).
        :raises NotBuiltError: If the sampler was not fit.
        """

        if self.posterior is None:
            raise NotBuiltError("The sampler has not been fit yet.")

        table = self.snp_table[[c for c in ('CHR', 'SNP', 'A1', 'A2') if c in self.snp_table.columns]].copy()
        post = self.posterior.to_table().drop(columns='SNP')

        for col in post.columns:
            table[col] = post[col].values
            if col.startswith('STD_BETA'):
                suffix = col[len('STD_BETA'):]
                if 'SCALE' + suffix in self.snp_table.columns:
                    table['BETA' + suffix] = post[col].values * self.snp_table['SCALE' + suffix].values

        return table

    def __repr__(self):
        return (f"BayesianMarkerSampler(method={self.method}, nit={self.nit}, nburn={self.nburn}, "
                f"nthin={self.nthin}, fitted={self.posterior is not None})")


def run_gibbs_chain(sampler, likelihood, snps, seed_seq, m_total, traits=None, desc='Sampling'):
    """
    Run a single Gibbs chain (a module-level function, so that chains can be dispatched to joblib workers).
    """
    return sampler.sample(likelihood, snps, seed_seq, m_total, traits=traits, desc=desc)


def gbayes(sumstats,
           ld_store,
           method='bayesC',
           nit=1000,
           nburn=0,
           nthin=1,
           pi=None,
           h2=0.5,
           sumstats_format='qgenpy',
           **sampler_kwargs):
    """
    A convenience function to fit a Bayesian Linear Regression model to GWAS summary statistics.

    :param sumstats: A `SumstatsTable`, a pandas DataFrame, the path to a summary statistics file,
    or a list of those (for multi-trait models).
    :param ld_store: An `LDStore`, a `GenotypeCatalog` with LD matrices, or the directory of the LD matrices.
    :param method: The prior on the marker effects: `bayesN`, `bayesA`, `bayesC` or `bayesR`.
    :param nit: The number of iterations.
    :param nburn: The number of burn-in iterations.
    :param nthin: The thinning interval.
    :param pi: The prior inclusion probability (`bayesC`) or mixing probabilities (`bayesR`).
    :param h2: The prior guess of the heritability.
    :param sumstats_format: The format of the summary statistics files (if paths are given).
    :param sampler_kwargs: Other keyword arguments for `BayesianMarkerSampler`.

    :return: The fitted `BayesianMarkerSampler`.
    """

    from ...SumstatsTable import SumstatsTable
    from ...LDStore import LDStore

    def as_sumstats_table(ss):
        if isinstance(ss, str):
            return SumstatsTable.from_file(ss, sumstats_format=sumstats_format)
        elif isinstance(ss, pd.DataFrame):
            return SumstatsTable(ss.copy())
        return ss

    if isinstance(sumstats, (list, tuple)):
        sumstats = [as_sumstats_table(ss) for ss in sumstats]
    else:
        sumstats = as_sumstats_table(sumstats)

    if isinstance(ld_store, str):
        ld_store = LDStore.from_directory(ld_store)
    elif hasattr(ld_store, 'ld_store'):
        ld_store = ld_store.ld_store

    sampler = BayesianMarkerSampler(ld_store=ld_store, method=method, nit=nit, nburn=nburn, nthin=nthin,
                                    pi=pi, h2=h2, **sampler_kwargs)

    return sampler.fit(sumstats)
