import os.path as osp
import numpy as np
import pandas as pd
import pytest
from scipy.stats import norm


N_INDIVIDUALS = 500
N_MARKERS = 100
CHROMOSOMES = (1, 2)
# Markers (per chromosome) carried by only a handful of individuals:
RARE_MARKERS = (10, 55)
CAUSAL_MARKERS = (5, 30, 72)


def simulate_genotypes(n=N_INDIVIDUALS, m=N_MARKERS, chromosomes=CHROMOSOMES, missing_rate=0.01, seed=7):
    """
    Simulate allele counts with local LD: a latent Gaussian AR(1) process along each
    chromosome is thresholded into two haplotypes per individual.

    :return: A dictionary of (n x m) float arrays of `A1` counts (`NaN` for missing calls).
    """

    rng = np.random.default_rng(seed)
    genotypes = {}

    for c in chromosomes:

        freq = rng.uniform(0.1, 0.5, size=m)
        haplotypes = []

        for _ in range(2):
            z = np.zeros((n, m))
            z[:, 0] = rng.standard_normal(n)
            for j in range(1, m):
                z[:, j] = 0.9 * z[:, j - 1] + np.sqrt(1. - 0.9 ** 2) * rng.standard_normal(n)
            haplotypes.append((z < norm.ppf(freq)).astype(np.float64))

        x = haplotypes[0] + haplotypes[1]

        for j in RARE_MARKERS:
            x[:, j] = 0.
            x[:3, j] = 1.

        missing = rng.uniform(size=(n, m)) < missing_rate
        missing[:, list(RARE_MARKERS)] = False
        x[missing] = np.nan

        genotypes[c] = x

    return genotypes


def simulate_phenotype(genotypes, h2=0.4, seed=11):

    rng = np.random.default_rng(seed)
    n = next(iter(genotypes.values())).shape[0]

    g = np.zeros(n)
    for c, x in genotypes.items():
        x = np.where(np.isnan(x), np.nanmean(x, axis=0), x)
        for j in CAUSAL_MARKERS:
            xj = (x[:, j] - x[:, j].mean()) / x[:, j].std()
            g += rng.choice([-1., 1.]) * xj

    g = g / g.std() * np.sqrt(h2)

    return g + rng.normal(scale=np.sqrt(1. - h2), size=n)


def pack_bed_records(x):
    """
    Encode an (n x m) matrix of `A1` counts in SNP-major PLINK BED format.
    """

    n, m = x.shape
    codes = np.full((n, m), 0b01, dtype=np.uint8)
    codes[x == 2.] = 0b00
    codes[x == 1.] = 0b10
    codes[x == 0.] = 0b11

    n_bytes = (n + 3) // 4
    padded = np.zeros((n_bytes * 4, m), dtype=np.uint8)
    padded[:n] = codes

    padded = padded.reshape(n_bytes, 4, m)
    packed = padded[:, 0] | (padded[:, 1] << 2) | (padded[:, 2] << 4) | (padded[:, 3] << 6)

    return bytes([0x6c, 0x1b, 0x01]) + np.ascontiguousarray(packed.T).tobytes()


def write_plink_fileset(prefix, genotypes, phenotype=None):
    """
    Write the simulated genotypes as a single PLINK fileset spanning all chromosomes.

    :return: A tuple of (bim table, fam table).
    """

    bim = []
    for c, x in genotypes.items():
        m = x.shape[1]
        bim.append(pd.DataFrame({
            'CHR': c,
            'SNP': [f'rs{c}_{j}' for j in range(m)],
            'cM': np.round(np.arange(m) * 0.01, 4),
            'POS': 1000 + np.arange(m) * 1000,
            'A1': 'A',
            'A2': 'G'
        }))
    bim = pd.concat(bim, ignore_index=True)

    n = next(iter(genotypes.values())).shape[0]
    fam = pd.DataFrame({
        'FID': [f'FAM{i}' for i in range(n)],
        'IID': [f'ID{i}' for i in range(n)],
        'fatherID': '0',
        'motherID': '0',
        'sex': 1,
        'phenotype': phenotype if phenotype is not None else -9
    })

    bim.to_csv(prefix + '.bim', sep='\t', header=False, index=False)
    fam.to_csv(prefix + '.fam', sep=' ', header=False, index=False)

    with open(prefix + '.bed', 'wb') as f:
        f.write(pack_bed_records(np.hstack(list(genotypes.values()))))

    return bim, fam


def marginal_sumstats(genotypes, phenotype, bim):
    """
    Marginal least-squares association statistics (mean-imputed genotypes).
    """

    x = np.hstack(list(genotypes.values()))
    n_obs = (~np.isnan(x)).sum(axis=0)
    freq = np.nanmean(x, axis=0) / 2.
    x = np.where(np.isnan(x), 2. * freq, x)

    xc = x - x.mean(axis=0)
    yc = phenotype - phenotype.mean()
    n = len(yc)

    sxx = (xc ** 2).sum(axis=0)
    beta = xc.T.dot(yc) / sxx
    resid = ((yc[:, None] - xc * beta) ** 2).sum(axis=0) / (n - 2)
    se = np.sqrt(resid / sxx)
    z = beta / se

    return pd.DataFrame({
        'CHR': bim['CHR'].values,
        'SNP': bim['SNP'].values,
        'POS': bim['POS'].values,
        'A1': bim['A1'].values,
        'A2': bim['A2'].values,
        'MAF': freq,
        'N': n_obs,
        'BETA': beta,
        'SE': se,
        'Z': z,
        'PVAL': 2. * norm.sf(np.abs(z))
    })


@pytest.fixture(scope='module')
def sim_data(tmp_path_factory):
    """
    Simulate a small PLINK dataset (2 chromosomes x 100 markers x 500 individuals,
    with missing calls and rare markers), a phenotype and marginal summary statistics.
    """

    data_dir = str(tmp_path_factory.mktemp('sim'))

    genotypes = simulate_genotypes()
    phenotype = simulate_phenotype(genotypes)

    prefix = osp.join(data_dir, 'sim')
    bim, fam = write_plink_fileset(prefix, genotypes, phenotype)

    return {
        'dir': data_dir,
        'bfile': prefix,
        'bed': prefix + '.bed',
        'genotypes': genotypes,
        'phenotype': phenotype,
        'bim': bim,
        'fam': fam,
        'sumstats': marginal_sumstats(genotypes, phenotype, bim)
    }
