import os
import os.path as osp
import numpy as np
import pandas as pd
import pytest
import qgenpy as qg
from qgenpy.exceptions import AlreadyExistsError, NotBuiltError, InvalidConfigError


@pytest.fixture(scope='module')
def raw_catalog(sim_data):
    return qg.GenotypeCatalog.from_files(sim_data['bed'], verbose=False)


@pytest.fixture(scope='module')
def catalog(raw_catalog, sim_data):
    """
    A catalog after QC (allele frequency >= 0.01) and LD computation.
    """
    catalog = raw_catalog.with_qc(min_maf=0.01, max_missing=0.05, verbose=False)
    return catalog.with_ld(osp.join(sim_data['dir'], 'catalog_ld'), window_size=20, verbose=False)


def test_prepared_catalog(raw_catalog, sim_data):

    assert raw_catalog.chromosomes == [1, 2]
    assert raw_catalog.chromosome_counts == {1: 100, 2: 100}
    assert raw_catalog.n == raw_catalog.sample_size == 500
    assert raw_catalog.bed_files == {1: sim_data['bed'], 2: sim_data['bed']}
    assert not raw_catalog.has_ld

    table = raw_catalog.to_snp_table()
    assert {'CHR', 'SNP', 'POS', 'A1', 'A2', 'MAF', 'MISSING', 'N'} <= set(table.columns)
    assert 'original_index' not in table.columns

    x = np.hstack([sim_data['genotypes'][c] for c in (1, 2)])
    np.testing.assert_array_equal(table['N'].values, (~np.isnan(x)).sum(axis=0))

    with pytest.raises(NotBuiltError):
        raw_catalog.ld_store


def test_qc_and_ld_return_new_catalogs(raw_catalog, catalog):
    """
    QC and LD computation leave the original catalog untouched.
    """

    assert raw_catalog.m == 200
    assert 'qc_pass' not in raw_catalog.to_snp_table().columns
    assert not raw_catalog.has_ld

    assert catalog.m == 196
    assert catalog.has_ld
    assert catalog.qc_parameters['min_maf'] == 0.01
    assert 'rs1_10' not in catalog.snps[1]

    table = catalog.to_snp_table()
    assert table['qc_pass'].all()
    np.testing.assert_allclose(table.loc[table['CHR'] == 1, 'LDSCORE'].values,
                               catalog.ld_store.get_scores(1))

    # Returned tables are copies:
    table['MAF'] = -1.
    assert np.all(catalog.to_snp_table()['MAF'] >= 0.)

    with pytest.raises(InvalidConfigError):
        raw_catalog.with_qc(max_missing=2.)


def test_save_and_load(catalog, sim_data):
    """
    A saved catalog is reloaded with full fidelity.
    """

    path = osp.join(sim_data['dir'], 'catalog.zarr')
    catalog.save(path)

    loaded = qg.GenotypeCatalog.load(path)

    assert loaded.chromosomes == catalog.chromosomes
    assert loaded.chromosome_counts == catalog.chromosome_counts
    assert loaded.n == catalog.n
    assert loaded.bed_files == catalog.bed_files
    assert loaded.ld_files == catalog.ld_files
    assert loaded.qc_parameters == catalog.qc_parameters

    pd.testing.assert_frame_equal(loaded.to_snp_table(), catalog.to_snp_table())
    pd.testing.assert_frame_equal(loaded.to_individual_table(), catalog.to_individual_table())

    # The genotype data and LD matrices are reachable from the reloaded catalog:
    assert loaded.genotype_store.m == 196
    np.testing.assert_array_equal(loaded.genotype_store.get_columns(2, snps=['rs2_0', 'rs2_1']),
                                  sim_data['genotypes'][2][:, [0, 1]])
    assert loaded.ld_store.get_block(1).n_snps == 98

    with pytest.raises(AlreadyExistsError):
        catalog.save(path)

    catalog.save(path, overwrite=True)
    assert qg.GenotypeCatalog.load(path).m == 196


def test_load_missing_or_incomplete(tmp_path):

    with pytest.raises(NotBuiltError):
        qg.GenotypeCatalog.load(str(tmp_path / 'nothing.zarr'))

    import zarr

    path = str(tmp_path / 'partial.zarr')
    zarr.open_group(path, mode='w').attrs['Complete'] = False

    with pytest.raises(NotBuiltError):
        qg.GenotypeCatalog.load(path)

    assert os.listdir(str(tmp_path)) == ['partial.zarr']
