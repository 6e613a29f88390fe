import os.path as osp
import numpy as np
import pytest
import qgenpy as qg
from qgenpy.stats.blr.priors import MarkerEffectPrior
from qgenpy.stats.blr.results import effective_sample_size
from qgenpy.exceptions import InvalidConfigError, NumericInstabilityError, NotBuiltError


@pytest.fixture(scope='module')
def catalog(sim_data):
    """
    Prepare the genotype catalog with LD matrices (window of 20 markers).
    """
    catalog = qg.GenotypeCatalog.from_files(sim_data['bed'], verbose=False)
    return catalog.with_ld(osp.join(sim_data['dir'], 'blr_ld'), window_size=20, verbose=False)


@pytest.fixture(scope='module')
def sumstats(sim_data):
    return qg.SumstatsTable(sim_data['sumstats'].copy())


@pytest.fixture(scope='module')
def bayesc_fit(catalog, sumstats):
    """
    Fit BayesC (pi = 0.01) with 100 iterations.
    """
    return qg.gbayes(sumstats, catalog, method='bayesC', nit=100, pi=0.01, seed=1, verbose=False)


def test_bayesc_scenario(bayesc_fit, sim_data):
    """
    Posterior inclusion probabilities are valid probabilities for every marker
    and one set of variance components is recorded per iteration.
    """

    table = bayesc_fit.to_table()

    assert len(table) == 200
    assert set(table['SNP']) == set(sim_data['sumstats']['SNP'])
    assert np.all((table['PIP'].values >= 0.) & (table['PIP'].values <= 1.))
    assert not table[['STD_BETA', 'BETA', 'VAR', 'PIP']].isnull().any().any()

    assert len(bayesc_fit.trace) == 100
    np.testing.assert_array_equal(bayesc_fit.trace.iterations, np.arange(1, 101))

    trace_table = bayesc_fit.trace.to_table()
    assert {'iteration', 'vb', 've', 'pi_0', 'pi_1', 'n_nonzero'} <= set(trace_table.columns)
    assert np.all(trace_table['vb'] > 0.) and np.all(trace_table['ve'] > 0.)
    np.testing.assert_allclose(trace_table['pi_0'] + trace_table['pi_1'], 1.)

    summary = bayesc_fit.trace.summary(nburn=20)
    assert {'mean', 'sd', 'ess'} == set(summary.columns)


def test_bayesc_with_full_inclusion_matches_bayesn(catalog, sumstats):
    """
    With pi = 1 and the variance components frozen, BayesC reduces to BayesN.
    """

    kwargs = dict(nit=50, vb=0.001, ve=0.8, update_vb=False, update_ve=False, update_pi=False,
                  seed=42, verbose=False)

    bayes_n = qg.BayesianMarkerSampler(catalog.ld_store, method='bayesN', **kwargs).fit(sumstats)
    bayes_c = qg.BayesianMarkerSampler(catalog.ld_store, method='bayesC', pi=1., **kwargs).fit(sumstats)

    np.testing.assert_allclose(bayes_c.posterior.mean, bayes_n.posterior.mean, rtol=1e-8, atol=1e-10)
    np.testing.assert_allclose(bayes_c.posterior.pip, 1.)


def test_shrinkage(bayesc_fit, sumstats):
    """
    Posterior mean effects of weakly associated markers are shrunk towards zero.
    """

    table = bayesc_fit.to_table().set_index('SNP').loc[sumstats.snps]
    marginal = np.abs(sumstats.get_snp_pseudo_corr())
    weak = sumstats.pval > 0.05

    posterior = np.abs(table['STD_BETA'].values)

    assert np.mean(posterior[weak] < marginal[weak]) > 0.9
    assert posterior[weak].sum() < marginal[weak].sum()


def test_burn_in_and_thinning(catalog, sumstats):

    sampler = qg.BayesianMarkerSampler(catalog.ld_store, method='bayesR', nit=100, nburn=20, nthin=10,
                                       seed=3, verbose=False).fit(sumstats)

    assert len(sampler.trace) == 10
    np.testing.assert_array_equal(sampler.trace.iterations, np.arange(10, 101, 10))
    assert sampler.posterior.n_samples == 8
    assert len(sampler.trace.to_table().filter(like='pi_').columns) == 4


def test_per_chromosome_chains(catalog, sumstats):

    sampler = qg.BayesianMarkerSampler(catalog.ld_store, method='bayesA', nit=30, per_chromosome=True,
                                       update_order='random', seed=5, verbose=False).fit(sumstats)

    assert set(sampler.trace.keys()) == {1, 2}
    assert all(len(trace) == 30 for trace in sampler.trace.values())
    assert sampler.posterior.m == 200

    # Identical seeds give identical chains:
    again = qg.BayesianMarkerSampler(catalog.ld_store, method='bayesA', nit=30, per_chromosome=True,
                                     update_order='random', seed=5, verbose=False).fit(sumstats)
    np.testing.assert_array_equal(sampler.posterior.mean, again.posterior.mean)


def test_multi_trait(catalog, sim_data):

    ss_1 = qg.SumstatsTable(sim_data['sumstats'].copy())
    table_2 = sim_data['sumstats'].copy()
    table_2['Z'] = 0.5 * table_2['Z']
    table_2['BETA'] = table_2['Z'] * table_2['SE']
    ss_2 = qg.SumstatsTable(table_2)

    sampler = qg.BayesianMarkerSampler(catalog.ld_store, method='bayesC', nit=30, pi=0.05,
                                       seed=9, verbose=False).fit([ss_1, ss_2], traits=['a', 'b'])

    table = sampler.to_table()
    assert {'STD_BETA_a', 'STD_BETA_b', 'PIP_a', 'PIP_b', 'BETA_a'} <= set(table.columns)
    np.testing.assert_array_equal(table['PIP_a'].values, table['PIP_b'].values)

    corr = sampler.posterior.effect_correlation
    assert corr.shape == (2, 2)
    np.testing.assert_allclose(np.diag(corr), 1.)

    assert {'vb_1_1', 'vb_1_2', 'vb_2_2', 've_1', 've_2'} <= set(sampler.trace.to_table().columns)

    with pytest.raises(InvalidConfigError):
        qg.BayesianMarkerSampler(catalog.ld_store, method='bayesR', nit=10, verbose=False).fit([ss_1, ss_2])


def test_individual_level(sim_data):

    store = qg.GenotypeStore.from_files(sim_data['bed'], verbose=False)

    sampler = qg.BayesianMarkerSampler(method='bayesC', nit=50, pi=0.05, seed=2,
                                       verbose=False).fit_individual(store, sim_data['phenotype'])

    table = sampler.to_table()
    assert len(table) == 200
    assert np.all((table['PIP'] >= 0.) & (table['PIP'] <= 1.))
    assert not table['BETA'].isnull().any()

    # The phenotype stored in the FAM file is used by default:
    default = qg.BayesianMarkerSampler(method='bayesC', nit=50, pi=0.05, seed=2,
                                       verbose=False).fit_individual(store)
    np.testing.assert_allclose(default.posterior.mean, sampler.posterior.mean, atol=1e-4)

    with pytest.raises(InvalidConfigError):
        qg.BayesianMarkerSampler(nit=10, verbose=False).fit_individual(store, sim_data['phenotype'][:10])


def test_invalid_configuration(catalog, sumstats):

    invalid = [
        dict(method='bayesX'),
        dict(nit=0),
        dict(nit=10, nburn=10),
        dict(nit=10, nthin=20),
        dict(h2=1.5),
        dict(method='bayesC', pi=2.),
        dict(method='bayesR', gamma=[0., 1.], pi=[0.5, 0.6]),
        dict(vb=-1.),
        dict(vb=0.),
        dict(ve=0.),
        dict(nub=0.),
        dict(update_order='sorted'),
        dict(init_effects='random'),
        dict(h2=None),
    ]

    for kwargs in invalid:
        with pytest.raises(InvalidConfigError):
            qg.BayesianMarkerSampler(catalog.ld_store, **kwargs)

    with pytest.raises(InvalidConfigError):
        qg.BayesianMarkerSampler(nit=10, verbose=False).fit(sumstats)

    with pytest.raises(NotBuiltError):
        qg.BayesianMarkerSampler(catalog.ld_store).to_table()


def test_numeric_instability(catalog, sumstats, monkeypatch):
    """
    An overflowing residual sum of squares makes the residual variance draw non-finite.
    The error reports the iteration and the last valid state of the chain.
    """

    from qgenpy.stats.blr.likelihood import SummaryStatLikelihood

    sse = SummaryStatLikelihood.sse
    calls = []

    def overflowing_sse(self, beta):
        calls.append(1)
        if len(calls) >= 3:
            return np.full(self.n_traits, np.inf)
        return sse(self, beta)

    monkeypatch.setattr(SummaryStatLikelihood, 'sse', overflowing_sse)

    sampler = qg.BayesianMarkerSampler(catalog.ld_store, method='bayesN', nit=10, seed=1, verbose=False)

    with pytest.raises(NumericInstabilityError) as exc_info:
        sampler.fit(sumstats)

    assert exc_info.value.iteration == 3

    last_valid_state = exc_info.value.last_valid_state
    assert last_valid_state['iteration'] == 2
    assert np.all(np.isfinite(last_valid_state['ve']))
    assert np.all(np.isfinite(last_valid_state['beta']))


def test_priors():

    prior = MarkerEffectPrior.from_parameters('bayesR', pi=0.1)
    np.testing.assert_allclose(prior.pi, [0.9, 0.1 / 3, 0.1 / 3, 0.1 / 3])
    assert prior.null_components.tolist() == [True, False, False, False]

    prior = MarkerEffectPrior.from_parameters('bayesC', pi=0.2)
    np.testing.assert_allclose(prior.pi, [0.8, 0.2])
    assert prior.expected_scale == pytest.approx(0.2)
    assert prior.initial_components(np.array([0., 0.5])).tolist() == [0, 1]

    assert MarkerEffectPrior.from_parameters('bayesN').n_components == 1


def test_effective_sample_size():

    rng = np.random.default_rng(0)
    independent = rng.standard_normal(2000)

    correlated = np.zeros(2000)
    for i in range(1, 2000):
        correlated[i] = 0.95 * correlated[i - 1] + rng.standard_normal()

    assert effective_sample_size(independent) > 1000
    assert effective_sample_size(correlated) < 200
