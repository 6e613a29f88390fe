import os
import os.path as osp
import numpy as np
import pytest
import zarr
import qgenpy as qg
from qgenpy.exceptions import AlreadyExistsError, NotBuiltError, NotFoundError, InvalidConfigError
from qgenpy.utils.system_utils import AtomicDirectory


WINDOW = 20


@pytest.fixture(scope='module')
def genotype_store(sim_data):
    return qg.GenotypeStore.from_files(sim_data['bed'], verbose=False)


@pytest.fixture(scope='module')
def ld_dir(sim_data):
    return osp.join(sim_data['dir'], 'ld')


@pytest.fixture(scope='module')
def ld_store(genotype_store, ld_dir):
    """
    Compute windowed LD matrices (20 markers on each side) for both chromosomes.
    """
    return qg.SparseLDBuilder(genotype_store, window_size=WINDOW, verbose=False).compute(ld_dir)


def reference_correlation(x):
    """
    Pearson correlation of mean-imputed genotype columns.
    """
    x = np.where(np.isnan(x), np.nanmean(x, axis=0), x)
    return np.corrcoef(x, rowvar=False)


def test_store_layout(ld_store, ld_dir):

    assert ld_store.chromosomes == [1, 2]
    assert sorted(os.listdir(ld_dir)) == ['chr_1.zarr', 'chr_2.zarr']

    block = ld_store.get_block(1)

    assert block.n_snps == 100
    assert block.chromosome == 1
    assert block.sample_size == 500
    assert block.window_unit == 'markers'
    assert block.window_size == WINDOW
    assert block.missing_policy == 'impute'
    assert block.validate()

    # Stores are discovered from the directory:
    assert qg.LDStore.from_directory(ld_dir).chromosomes == [1, 2]


def test_round_trip(ld_store, sim_data):
    """
    The stored correlations reproduce the correlations computed directly from the genotypes
    for pairs of markers inside the window.
    """

    for c in (1, 2):
        r_ref = reference_correlation(sim_data['genotypes'][c])
        r_mat = ld_store.get_block(c).to_csr().toarray()

        i, j = np.triu_indices(100, k=1)
        inside = (j - i) <= WINDOW

        np.testing.assert_allclose(r_mat[i[inside], j[inside]], r_ref[i[inside], j[inside]], atol=1e-8)


def test_symmetry_and_windowing(ld_store):

    r_mat = ld_store.get_block(2).to_csr().toarray()

    np.testing.assert_array_equal(r_mat, r_mat.T)
    np.testing.assert_array_equal(np.diag(r_mat), np.ones(100))

    i, j = np.indices(r_mat.shape)
    assert np.all(r_mat[np.abs(i - j) > WINDOW] == 0.)

    # The LD scores agree with the stored correlations:
    np.testing.assert_allclose(ld_store.get_scores(2), (r_mat ** 2).sum(axis=1))


def test_block_accessors(ld_store):

    block = ld_store.get_block(1)
    r_mat = block.to_csr().toarray()

    assert block['rs1_3', 'rs1_4'] == pytest.approx(r_mat[3, 4])
    np.testing.assert_allclose(block.getrow(50, symmetric=True),
                               r_mat[50, r_mat[50] != 0.])

    neighbors = block.get_neighbors('rs1_50', rsq_threshold=0.5)
    expected = {f'rs1_{k}' for k in np.where(r_mat[50] ** 2 > 0.5)[0] if k != 50}
    assert neighbors == expected

    expanded = ld_store.expand_snps(['rs1_50', 'rs2_0'], rsq_threshold=0.5)
    assert expected <= set(expanded)
    assert 'rs2_0' in expanded

    with pytest.raises(NotFoundError):
        block.get_snp_index('rs_missing')

    table = ld_store.to_snp_table(col_subset=['CHR', 'SNP', 'LDScore'])
    assert len(table) == 200


def test_aligned_ld(ld_store):
    """
    The LD between an arbitrary list of markers follows the order of the list; absent
    markers have no neighbors.
    """

    block = ld_store.get_block(1)
    r_mat = block.to_csr().toarray()

    snps = np.array(['rs1_12', 'rs1_10', 'rs_absent', 'rs1_11'])
    aligned = ld_store.get_aligned_ld(1, snps).toarray()

    idx = [12, 10, 11]
    np.testing.assert_allclose(aligned[np.ix_([0, 1, 3], [0, 1, 3])], r_mat[np.ix_(idx, idx)])
    assert np.all(aligned[2] == 0.)

    filled = ld_store.get_aligned_ld(1, snps, fill_diagonal=True).toarray()
    assert filled[2, 2] == 1.


def test_caching_and_not_built(ld_store, tmp_path):

    assert ld_store.get_block(1) is ld_store.get_block(1)
    assert ld_store.get_block(1).load() is ld_store.get_block(1).load()

    ld_store.release()
    assert not ld_store.get_block(1).in_memory

    with pytest.raises(NotBuiltError):
        ld_store.get_block(22)

    with pytest.raises(NotBuiltError):
        qg.SparseLDBlock.from_path(str(tmp_path / 'chr_9.zarr'))


def test_existing_store_raises(genotype_store, ld_store, ld_dir):

    with pytest.raises(AlreadyExistsError):
        qg.SparseLDBuilder(genotype_store, window_size=WINDOW, verbose=False).compute(ld_dir)

    # Recomputing with `overwrite=True` gives the same matrix:
    recomputed = qg.SparseLDBuilder(genotype_store, window_size=WINDOW, verbose=False).compute(
        ld_dir, overwrite=True, chromosomes=[2])
    np.testing.assert_allclose(recomputed.get_block(2).to_csr().toarray(),
                               qg.LDStore.from_directory(ld_dir).get_block(2).to_csr().toarray())


def test_incomplete_stores_are_rejected(tmp_path):
    """
    A store that was not marked as complete is never read, and a failed write
    leaves nothing at the target path.
    """

    path = str(tmp_path / 'chr_5.zarr')
    z = zarr.open_group(path, mode='w')
    z.attrs['Complete'] = False

    with pytest.raises(NotBuiltError):
        qg.SparseLDBlock.from_path(path)

    target = str(tmp_path / 'chr_6.zarr')
    with pytest.raises(RuntimeError):
        with AtomicDirectory(target) as staging_dir:
            zarr.open_group(staging_dir, mode='w')
            raise RuntimeError("interrupted")

    assert not osp.exists(target)
    assert os.listdir(str(tmp_path)) == ['chr_5.zarr']


def test_pairwise_policy_and_threshold(genotype_store, sim_data, tmp_path):

    store = qg.SparseLDBuilder(genotype_store,
                               window_size=5,
                               missing_policy='pairwise',
                               threshold=0.1,
                               dtype='float32',
                               verbose=False).compute(str(tmp_path), chromosomes=[1])

    block = store.get_block(1)
    assert block.missing_policy == 'pairwise'
    assert block.stored_dtype == np.float32
    assert np.all(np.abs(block.data) >= 0.1)

    # Pairwise deletion for a pair of markers with missing calls:
    x = sim_data['genotypes'][1][:, [0, 1]]
    observed = ~np.isnan(x).any(axis=1)
    r01 = np.corrcoef(x[observed, 0], x[observed, 1])[0, 1]

    if abs(r01) >= 0.1:
        assert block[0, 1] == pytest.approx(r01, abs=1e-5)


def test_invalid_parameters(genotype_store):

    with pytest.raises(InvalidConfigError):
        qg.SparseLDBuilder(genotype_store)

    with pytest.raises(InvalidConfigError):
        qg.SparseLDBuilder(genotype_store, window_size=10, kb_window_size=100)

    with pytest.raises(InvalidConfigError):
        qg.SparseLDBuilder(genotype_store, window_size=10, missing_policy='drop')

    with pytest.raises(InvalidConfigError):
        qg.SparseLDBuilder(genotype_store, window_size=10, threshold=1.5)
