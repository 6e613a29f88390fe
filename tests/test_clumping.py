import os.path as osp
import numpy as np
import pandas as pd
import pytest
import qgenpy as qg
from qgenpy.exceptions import InvalidConfigError, MissingColumnError


@pytest.fixture(scope='module')
def catalog(sim_data):
    """
    Prepare the genotype catalog: marker statistics, QC (allele frequency >= 0.01)
    and LD matrices with a window of 20 markers.
    """
    catalog = qg.GenotypeCatalog.from_files(sim_data['bed'], verbose=False)
    catalog = catalog.with_qc(min_maf=0.01, verbose=False)
    return catalog.with_ld(osp.join(sim_data['dir'], 'clump_ld'), window_size=20, verbose=False)


def test_adjust_stat_scenario(catalog, sim_data):
    """
    Clumping and thresholding returns one row per input variant and one effect
    column per p-value threshold, without missing values.
    """

    assert catalog.m == 196

    result = qg.adjust_stat(sim_data['sumstats'], catalog, rsq_threshold=0.9, pval_thresholds=[0.01, 0.05],
                            verbose=False)

    assert len(result) == 200
    assert [c for c in result.columns if c.startswith('b_')] == ['b_0.01', 'b_0.05']
    assert not result.isnull().any().any()
    assert np.array_equal(result['SNP'].values, sim_data['sumstats']['SNP'].values)

    # Retained variants carry their marginal effect, the others exactly zero:
    beta = sim_data['sumstats']['BETA'].values
    for col in ('b_0.01', 'b_0.05'):
        nonzero = result[col].values != 0.
        np.testing.assert_array_equal(result[col].values[nonzero], beta[nonzero])

    # Variants above the threshold are never retained:
    assert np.all(result['b_0.01'].values[sim_data['sumstats']['PVAL'].values > 0.01] == 0.)


def test_retained_variants_are_not_in_high_ld(catalog, sim_data):

    adjuster = qg.SummaryStatAdjuster(catalog.ld_store, rsq_threshold=0.5, pval_thresholds=[1.], verbose=False)
    result = adjuster.adjust(qg.SumstatsTable(sim_data['sumstats'].copy()))

    for c in (1, 2):
        kept = result.loc[(result['CHR'] == c) & (result['b_1.0'] != 0.), 'SNP'].values
        r_mat = catalog.ld_store.get_aligned_ld(c, kept).toarray()
        np.fill_diagonal(r_mat, 0.)
        assert np.all(r_mat ** 2 <= 0.5)


def test_clumping_determinism(catalog, sim_data):
    """
    Running the adjuster twice (and with tied p-values) yields identical results.
    """

    sumstats = sim_data['sumstats'].copy()
    # Introduce ties between markers in strong LD:
    sumstats.loc[[20, 21], 'PVAL'] = 1e-300

    first = qg.adjust_stat(sumstats, catalog, rsq_threshold=0.1, pval_thresholds=[0.01], verbose=False)
    second = qg.adjust_stat(sumstats.sample(frac=1., random_state=1), catalog, rsq_threshold=0.1,
                            pval_thresholds=[0.01], verbose=False)

    pd.testing.assert_frame_equal(first, second.set_index('SNP').loc[first['SNP']].reset_index()[first.columns])

    r_mat = catalog.ld_store.get_aligned_ld(1, np.array(['rs1_20', 'rs1_21'])).toarray()
    if r_mat[0, 1] ** 2 > 0.1:
        # The lexically smaller rsID wins the tie:
        assert first.loc[20, 'b_0.01'] != 0.
        assert first.loc[21, 'b_0.01'] == 0.


def test_clumping_monotonicity(catalog, sim_data):
    """
    A stricter p-value threshold never retains more variants.
    """

    thresholds = [1e-4, 1e-3, 0.01, 0.05, 0.2, 1.]
    result = qg.adjust_stat(sim_data['sumstats'], catalog, rsq_threshold=0.2, pval_thresholds=thresholds,
                            verbose=False)

    for t1, t2 in zip(thresholds[:-1], thresholds[1:]):
        retained_1 = result[f'b_{t1}'].values != 0.
        retained_2 = result[f'b_{t2}'].values != 0.
        assert np.all(retained_2[retained_1])


def test_variants_absent_from_ld(catalog, sim_data):
    """
    Variants that are not in the LD matrices (here: the rare variants removed by QC
    and a variant without a chromosome) have no neighbors and are retained on their own.
    """

    sumstats = sim_data['sumstats'].copy()
    rare = sumstats['SNP'].isin(['rs1_10', 'rs2_55'])
    sumstats.loc[rare, 'PVAL'] = 1e-10

    extra = sumstats.iloc[[0]].copy()
    extra['SNP'] = 'rs_unknown'
    extra['PVAL'] = 1e-12
    sumstats = pd.concat([sumstats, extra], ignore_index=True).drop(columns='CHR')

    result = qg.adjust_stat(sumstats, catalog, rsq_threshold=0.9, pval_thresholds=[1e-6], verbose=False)

    assert len(result) == 201
    assert set(result.loc[result['b_1e-06'] != 0., 'SNP']) >= {'rs1_10', 'rs2_55', 'rs_unknown'}


def test_empty_selection(catalog, sim_data):

    sumstats = sim_data['sumstats'].copy()
    sumstats['PVAL'] = 0.5

    result = qg.adjust_stat(sumstats, catalog, pval_thresholds=[1e-8], verbose=False)
    assert np.all(result['b_1e-08'].values == 0.)


def test_invalid_inputs(catalog, sim_data):

    with pytest.raises(InvalidConfigError):
        qg.SummaryStatAdjuster(catalog.ld_store, rsq_threshold=1.5)

    with pytest.raises(InvalidConfigError):
        qg.SummaryStatAdjuster(catalog.ld_store, pval_thresholds=[0.])

    with pytest.raises(InvalidConfigError):
        qg.SummaryStatAdjuster(catalog.ld_store, pval_thresholds=[0.01, 0.01])

    with pytest.raises(MissingColumnError):
        qg.adjust_stat(sim_data['sumstats'].drop(columns=['BETA']), catalog, verbose=False)
