import os.path as osp
import numpy as np
import pandas as pd
import pytest
import qgenpy as qg
from qgenpy.exceptions import MissingColumnError


@pytest.fixture(scope='module')
def genotype_store(sim_data):
    return qg.GenotypeStore.from_files(sim_data['bed'], verbose=False)


@pytest.fixture(scope='module')
def weights(sim_data):
    """
    A weight table with two weight columns, the second one sparse.
    """
    rng = np.random.default_rng(17)
    table = sim_data['bim'][['CHR', 'SNP', 'A1', 'A2']].copy()
    table['w1'] = rng.normal(size=len(table))
    table['w2'] = np.where(rng.uniform(size=len(table)) < 0.1, rng.normal(size=len(table)), 0.)
    return table


def dense_scores(sim_data, weights):
    x = np.nan_to_num(np.hstack([sim_data['genotypes'][c] for c in (1, 2)]))
    return x.dot(weights[['w1', 'w2']].values)


def test_scores_match_dense_product(genotype_store, sim_data, weights):

    scores = qg.gscore(genotype_store, weights, verbose=False)

    assert list(scores.columns) == ['FID', 'IID', 'w1', 'w2']
    assert np.array_equal(scores['IID'].values, sim_data['fam']['IID'].values)
    np.testing.assert_allclose(scores[['w1', 'w2']].values, dense_scores(sim_data, weights),
                               rtol=1e-5, atol=1e-6)


def test_flipped_and_mismatched_alleles(genotype_store, sim_data, weights):
    """
    Weights reported for the reference allele apply to the count of `A2`; variants
    whose alleles do not match the genotype data are dropped.
    """

    flip = np.arange(len(weights)) % 2 == 0

    swapped = weights.copy()
    swapped.loc[flip, ['A1', 'A2']] = swapped.loc[flip, ['A2', 'A1']].values

    projector = qg.ScoreProjector(genotype_store, verbose=False)

    x = np.hstack([sim_data['genotypes'][c] for c in (1, 2)])
    x[:, flip] = 2. - x[:, flip]
    expected = np.nan_to_num(x).dot(weights[['w1', 'w2']].values)

    np.testing.assert_allclose(projector.project(swapped)[['w1', 'w2']].values, expected,
                               rtol=1e-5, atol=1e-6)

    # Swapping the alleles and negating the weights leaves centered scores unchanged:
    negated = swapped.copy()
    negated.loc[flip, ['w1', 'w2']] = -negated.loc[flip, ['w1', 'w2']].values

    np.testing.assert_allclose(projector.project(negated, center=True)[['w1', 'w2']].values,
                               projector.project(weights, center=True)[['w1', 'w2']].values,
                               rtol=1e-5, atol=1e-6)

    mismatched = swapped.copy()
    mismatched.loc[[1, 3], 'A1'] = 'T'

    kept = swapped.copy()
    kept.loc[[1, 3], ['w1', 'w2']] = 0.
    np.testing.assert_allclose(projector.project(mismatched)[['w1', 'w2']].values,
                               projector.project(kept)[['w1', 'w2']].values,
                               rtol=1e-5, atol=1e-6)


def test_single_flipped_marker_counts_reference_allele(genotype_store, sim_data):
    """
    A unit weight on `A2` of a single variant scores the number of copies of `A2`,
    with missing calls contributing zero.
    """

    x = sim_data['genotypes'][1][:, 0]

    weights = pd.DataFrame({'SNP': ['rs1_0'], 'A1': ['G'], 'A2': ['A'], 'w': [1.]})
    scores = qg.gscore(genotype_store, weights, weight_cols=['w'], verbose=False)

    np.testing.assert_allclose(scores['w'].values, np.where(np.isnan(x), 0., 2. - x))


def test_partial_weight_tables(genotype_store, sim_data, weights):
    """
    Variants absent from the weight table (or absent from the genotype data) contribute nothing.
    """

    subset = weights.iloc[100:].copy()
    extra = pd.DataFrame({'SNP': ['rs_absent'], 'A1': ['A'], 'A2': ['G'], 'w1': [10.], 'w2': [1.]})
    table = pd.concat([subset, extra], ignore_index=True)

    scores = qg.gscore(genotype_store, table, weight_cols=['w1'], verbose=False)

    expected = np.nan_to_num(sim_data['genotypes'][2]).dot(subset['w1'].values)
    np.testing.assert_allclose(scores['w1'].values, expected, rtol=1e-5, atol=1e-6)


def test_scoring_from_files(sim_data, weights, tmp_path):

    weights_file = str(tmp_path / 'weights.txt')
    weights.to_csv(weights_file, sep='\t', index=False)

    scores = qg.gscore(sim_data['bed'], weights_file, verbose=False)
    np.testing.assert_allclose(scores[['w1', 'w2']].values, dense_scores(sim_data, weights),
                               rtol=1e-5, atol=1e-6)


def test_scoring_clumped_effects(sim_data):
    """
    The output of clumping can be scored directly (one score per p-value threshold).
    """

    catalog = qg.GenotypeCatalog.from_files(sim_data['bed'], verbose=False)
    catalog = catalog.with_ld(osp.join(sim_data['dir'], 'score_ld'), window_size=10, verbose=False)

    effects = qg.adjust_stat(sim_data['sumstats'], catalog, pval_thresholds=[0.001, 1.], verbose=False)
    scores = qg.gscore(catalog, effects, verbose=False)

    assert list(scores.columns) == ['FID', 'IID', 'b_0.001', 'b_1.0']
    assert np.corrcoef(scores['b_0.001'], sim_data['phenotype'])[0, 1] > 0.


def test_missing_columns(genotype_store, weights):

    with pytest.raises(MissingColumnError):
        qg.gscore(genotype_store, weights.drop(columns='A1'), verbose=False)

    with pytest.raises(MissingColumnError):
        qg.gscore(genotype_store, weights, weight_cols=['w3'], verbose=False)

    with pytest.raises(MissingColumnError):
        qg.gscore(genotype_store, weights[['SNP', 'A1', 'A2']], verbose=False)
