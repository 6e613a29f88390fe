import numpy as np
import pandas as pd
import pytest
from scipy import stats
import qgenpy as qg
from qgenpy.exceptions import MissingColumnError


@pytest.fixture
def sumstats(sim_data):
    return qg.SumstatsTable(sim_data['sumstats'].copy())


def test_derived_statistics(sim_data):

    table = sim_data['sumstats'].drop(columns=['Z', 'PVAL'])
    ss = qg.SumstatsTable(table.copy())

    np.testing.assert_allclose(ss.z_score, table['BETA'] / table['SE'])
    np.testing.assert_allclose(ss.pval, 2. * stats.norm.sf(np.abs(table['BETA'] / table['SE'])))
    np.testing.assert_allclose(ss.negative_log10_p_value, -np.log10(ss.pval))

    z = ss.z_score
    n = table['N'].values
    np.testing.assert_allclose(ss.get_snp_pseudo_corr(), z / np.sqrt(n - 1 + z ** 2))
    np.testing.assert_allclose(ss.get_yy_per_snp(), (n - 2) * table['SE'] ** 2 + table['BETA'] ** 2)

    out = ss.to_table(['SNP', 'STD_BETA', 'CHISQ'])
    assert list(out.columns) == ['SNP', 'STD_BETA', 'CHISQ']
    np.testing.assert_allclose(out['CHISQ'], z ** 2)


def test_missing_columns(sim_data):

    with pytest.raises(MissingColumnError):
        qg.SumstatsTable(sim_data['sumstats'].drop(columns=['A1']))

    with pytest.raises(MissingColumnError):
        qg.SumstatsTable(sim_data['sumstats'].drop(columns=['SNP', 'POS']))

    ss = qg.SumstatsTable(sim_data['sumstats'].drop(columns=['Z', 'SE']))

    with pytest.raises(MissingColumnError):
        ss.z_score

    with pytest.raises(MissingColumnError):
        ss.validate_columns(['BETA', 'Z'])

    with pytest.raises(MissingColumnError):
        ss.to_table(['SNP', 'OR'])

    no_n = qg.SumstatsTable(sim_data['sumstats'].drop(columns=['N']))
    with pytest.raises(MissingColumnError):
        no_n.get_snp_pseudo_corr()


def test_match_with_allele_flips(sumstats, sim_data):
    """
    Variants reported for the other allele are flipped; variants with
    incompatible alleles are dropped.
    """

    original = sumstats.table.copy()

    table = sumstats.table
    flip = np.arange(len(table)) < 10
    table.loc[flip, ['A1', 'A2']] = table.loc[flip, ['A2', 'A1']].values
    table.loc[flip, 'BETA'] = -table.loc[flip, 'BETA']
    table.loc[flip, 'Z'] = -table.loc[flip, 'Z']
    table.loc[flip, 'MAF'] = 1. - table.loc[flip, 'MAF']
    table.loc[[15, 16], 'A1'] = 'C'

    sumstats.match(sim_data['bim'])

    assert len(sumstats) == 198
    assert not sumstats.table['SNP'].isin(original['SNP'].iloc[[15, 16]]).any()

    expected = original.drop(index=[15, 16]).reset_index(drop=True)
    matched = sumstats.table.set_index('SNP').loc[expected['SNP']]

    np.testing.assert_array_equal(matched['A1'].values, expected['A1'].values)
    np.testing.assert_allclose(matched['BETA'].values, expected['BETA'].values)
    np.testing.assert_allclose(matched['Z'].values, expected['Z'].values)
    np.testing.assert_allclose(matched['MAF'].values, expected['MAF'].values)


def test_filters(sumstats, sim_data):

    by_chrom = sumstats.split_by_chromosome()
    assert set(by_chrom.keys()) == {1, 2}
    assert all(len(ss) == 100 for ss in by_chrom.values())
    assert by_chrom[2].chromosome == 2

    sumstats.filter_snps(extract_snps=['rs1_0', 'rs1_1', 'rs_absent'])
    assert list(sumstats.snps) == ['rs1_0', 'rs1_1']

    ss = qg.SumstatsTable(sim_data['sumstats'].copy())
    ss.filter_by_allele_frequency(min_maf=0.01)
    assert len(ss) == 198
    assert not ss.table['SNP'].isin(['rs1_10', 'rs2_55']).any()

    table = sim_data['sumstats'].copy()
    table = pd.concat([table, table.iloc[[0]]], ignore_index=True)
    ss = qg.SumstatsTable(table)
    ss.drop_duplicates()
    assert len(ss) == 199


def test_from_file_formats(sumstats, sim_data, tmp_path):

    # Native format:
    native_file = str(tmp_path / 'native.sumstats')
    sumstats.to_file(native_file)
    loaded = qg.SumstatsTable.from_file(native_file)
    pd.testing.assert_frame_equal(loaded.to_table(), sumstats.to_table(), check_dtype=False)

    table = sim_data['sumstats']

    # plink2 --glm:
    plink2 = pd.DataFrame({
        '#CHROM': table['CHR'], 'POS': table['POS'], 'ID': table['SNP'],
        'REF': table['A2'], 'ALT': table['A1'], 'A1': table['A1'],
        'A1_FREQ': table['MAF'], 'OBS_CT': table['N'], 'BETA': table['BETA'],
        'SE': table['SE'], 'T_STAT': table['Z'], 'P': table['PVAL']
    })
    plink2_file = str(tmp_path / 'gwas.PHENO1.glm.linear')
    plink2.to_csv(plink2_file, sep='\t', index=False)

    ss = qg.SumstatsTable.from_file(plink2_file, sumstats_format='plink2')
    assert np.array_equal(ss.a2, table['A2'].values)
    np.testing.assert_allclose(ss.z_score, table['Z'].values)
    np.testing.assert_allclose(ss.maf, table['MAF'].values)

    # COJO:
    cojo = pd.DataFrame({
        'SNP': table['SNP'], 'A1': table['A1'], 'A2': table['A2'], 'freq': table['MAF'],
        'b': table['BETA'], 'se': table['SE'], 'p': table['PVAL'], 'N': table['N']
    })
    cojo_file = str(tmp_path / 'gwas.ma')
    cojo.to_csv(cojo_file, sep=' ', index=False)

    ss = qg.SumstatsTable.from_file(cojo_file, sumstats_format='COJO')
    np.testing.assert_allclose(ss.beta_hat, table['BETA'].values)
    np.testing.assert_allclose(ss.z_score, table['BETA'].values / table['SE'].values)

    with pytest.raises(KeyError):
        qg.SumstatsTable.from_file(cojo_file, sumstats_format='regenie')
