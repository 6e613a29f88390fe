import os.path as osp
import numpy as np
import pytest
import qgenpy as qg
from qgenpy.exceptions import FormatError, NotFoundError, InvalidConfigError


@pytest.fixture(scope='module')
def genotype_store(sim_data):
    """
    Open the simulated PLINK fileset (both chromosomes are stored in one BED file).
    """
    return qg.GenotypeStore.from_files(sim_data['bed'], verbose=False)


def test_basic_properties(genotype_store, sim_data):
    """
    The store is split into one partition per chromosome that shares the individuals.
    """

    assert genotype_store.chromosomes == [1, 2]
    assert genotype_store.n == 500
    assert genotype_store.m == 200
    assert genotype_store.shapes == {1: 100, 2: 100}
    assert genotype_store.bed_files == {1: sim_data['bed'], 2: sim_data['bed']}

    assert np.array_equal(genotype_store[1].snps, sim_data['bim'].loc[sim_data['bim']['CHR'] == 1, 'SNP'].values)
    assert np.array_equal(genotype_store.samples, sim_data['fam']['IID'].values)


def test_decoding_matches_reference(genotype_store, sim_data):
    """
    Decoded columns and rows agree with the simulated allele counts, including missing calls.
    """

    for c in (1, 2):
        reference = sim_data['genotypes'][c]

        cols = genotype_store.get_columns(c, col_idx=np.array([0, 10, 57, 99]))
        np.testing.assert_array_equal(cols, reference[:, [0, 10, 57, 99]])

        rows = genotype_store.get_rows(c, row_idx=np.array([1, 2, 3, 250, 499]))
        np.testing.assert_array_equal(rows, reference[[1, 2, 3, 250, 499], :])

    by_id = genotype_store.get_columns(2, snps=['rs2_3', 'rs2_80'])
    np.testing.assert_array_equal(by_id, sim_data['genotypes'][2][:, [3, 80]])

    assert np.isnan(genotype_store.get_columns(1)).sum() == np.isnan(sim_data['genotypes'][1]).sum()


def test_missing_entries_raise_not_found(genotype_store):

    with pytest.raises(NotFoundError):
        genotype_store.get_columns(1, snps=['rs_missing'])

    with pytest.raises(NotFoundError):
        genotype_store.get_rows(1, iids=['nobody'])

    with pytest.raises(NotFoundError):
        genotype_store[22]


def test_malformed_bed_raises_format_error(sim_data, tmp_path):
    """
    A BED file whose size disagrees with the BIM/FAM files, or with a bad
    magic number, is rejected before any decoding.
    """

    import shutil

    prefix = str(tmp_path / 'broken')
    shutil.copy(sim_data['bfile'] + '.bim', prefix + '.bim')
    shutil.copy(sim_data['bfile'] + '.fam', prefix + '.fam')

    with open(sim_data['bed'], 'rb') as f:
        content = f.read()

    with open(prefix + '.bed', 'wb') as f:
        f.write(content[:-10])

    with pytest.raises(FormatError):
        qg.GenotypeStore.from_files(prefix + '.bed', verbose=False)

    with open(prefix + '.bed', 'wb') as f:
        f.write(b'\x00\x00\x01' + content[3:])

    with pytest.raises(FormatError):
        qg.GenotypeStore.from_files(prefix + '.bed', verbose=False)

    with pytest.raises(FileNotFoundError):
        qg.GenotypeStore.from_files(osp.join(str(tmp_path), 'nothing_here*'), verbose=False)


def test_marker_statistics(genotype_store, sim_data):

    genotype_store.compute_marker_statistics(verbose=False)

    for c in (1, 2):
        x = sim_data['genotypes'][c]
        table = genotype_store[c].get_snp_table()

        np.testing.assert_array_equal(table['N'].values, (~np.isnan(x)).sum(axis=0))
        np.testing.assert_allclose(table['FREQ'].values, np.nanmean(x, axis=0) / 2., rtol=1e-6)
        np.testing.assert_allclose(table['MISSING'].values, np.isnan(x).mean(axis=0), rtol=1e-6)
        assert np.all(table['MAF'].values <= 0.5)


def test_quality_control(sim_data):
    """
    QC annotates the markers with flags without altering the store, and
    `apply_qc` returns a new store restricted to the passing markers.
    """

    store = qg.GenotypeStore.from_files(sim_data['bed'], verbose=False)

    n_pass = store.run_qc(min_maf=0.01, max_missing=0.1, verbose=False)

    assert n_pass == {1: 98, 2: 98}
    assert store.m == 200
    assert not store[1].snp_table.loc[10, 'qc_maf']
    assert store[1].snp_table.loc[10, 'qc_missing']

    qc_store = store.apply_qc()

    assert qc_store.m == 196
    assert 'rs1_10' not in qc_store[1].snps
    assert 'rs2_55' not in qc_store[2].snps
    np.testing.assert_array_equal(qc_store.get_columns(1, snps=['rs1_11']),
                                  sim_data['genotypes'][1][:, [11]])

    with pytest.raises(InvalidConfigError):
        store.run_qc(min_maf=0.7)


def test_filtering(sim_data, tmp_path):

    keep_file = str(tmp_path / 'keep.txt')
    with open(keep_file, 'w') as f:
        f.write('\n'.join([f'FAM{i} ID{i}' for i in range(0, 500, 2)]))

    store = qg.GenotypeStore.from_files(sim_data['bed'],
                                        keep_file=keep_file,
                                        extract_snps=[f'rs2_{j}' for j in range(20)],
                                        verbose=False)

    assert store.chromosomes == [2]
    assert store.n == 250
    assert store.m == 20

    np.testing.assert_array_equal(store.get_columns(2, col_idx=np.arange(20)),
                                  sim_data['genotypes'][2][::2, :20])


def test_scoring_method(genotype_store, sim_data):
    """
    Linear scores match a dense matrix product, with missing calls contributing zero.
    """

    rng = np.random.default_rng(3)
    beta = rng.normal(size=100)
    beta[::3] = 0.

    expected = np.nan_to_num(sim_data['genotypes'][1]).dot(beta)

    np.testing.assert_allclose(genotype_store[1].score(beta, chunk_size=17), expected, rtol=1e-5, atol=1e-6)


def test_row_reads_decode_only_requested_individuals(tmp_path):
    """
    Reading a few individuals decodes only their calls: the peak allocation stays
    well below the size of the packed genotype file.
    """

    import tracemalloc
    from conftest import write_plink_fileset

    rng = np.random.default_rng(5)
    x = rng.choice([0., 1., 2., np.nan], p=[.3, .4, .29, .01], size=(2003, 3000))

    prefix = str(tmp_path / 'large')
    write_plink_fileset(prefix, {1: x})

    g = qg.GenotypeStore.from_files(prefix + '.bed', verbose=False)[1]
    packed_size = osp.getsize(prefix + '.bed')

    row_idx = np.array([0, 1001, 2002])

    tracemalloc.start()
    rows = g.read_rows(row_idx)
    _, peak = tracemalloc.get_traced_memory()
    tracemalloc.stop()

    np.testing.assert_array_equal(rows, x[row_idx, :])
    assert peak < packed_size / 4

    np.testing.assert_array_equal(g.read_rows(row_idx, chunk_size=7), x[row_idx, :])
    np.testing.assert_array_equal(g.read_columns(np.array([0, 1500, 2999])), x[:, [0, 1500, 2999]])


def test_reader_threads(sim_data):
    """
    The number of reader threads is carried by every partition, through QC and copies,
    and does not change the decoded values.
    """

    store = qg.GenotypeStore.from_files(sim_data['bed'], threads=2, verbose=False)

    assert store.threads == 2
    assert all(g.threads == 2 for _, g in store)

    store.run_qc(min_maf=0.01, verbose=False)
    qc_store = store.apply_qc()
    assert qc_store.threads == 2
    assert all(g.threads == 2 for _, g in qc_store)

    np.testing.assert_array_equal(store.get_columns(2, col_idx=np.arange(100)), sim_data['genotypes'][2])
    np.testing.assert_array_equal(store.get_rows(1, row_idx=np.array([7, 8])), sim_data['genotypes'][1][[7, 8], :])

    with pytest.raises(TypeError):
        qg.GenotypeStore.from_files(sim_data['bed'], temp_dir='temp', verbose=False)
