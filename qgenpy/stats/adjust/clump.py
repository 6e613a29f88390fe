import logging
import numpy as np
import pandas as pd
from tqdm import tqdm

from ..ld.utils import clump_snps
from ...exceptions import InvalidConfigError, NotBuiltError
from ...utils.compute_utils import iterable

logger = logging.getLogger(__name__)


def validate_clumping_parameters(rsq_threshold, pval_thresholds):
    """
    :param rsq_threshold: The r^2 threshold, in [0, 1].
    :param pval_thresholds: A sequence of p-value thresholds, each in (0, 1].

    :return: The p-value thresholds as a list of floats.
    :raises InvalidConfigError: If any of the parameters is out of range.
    """

    if rsq_threshold is None or not 0. <= rsq_threshold <= 1.:
        raise InvalidConfigError(f"The r^2 threshold must be in [0, 1] (got {rsq_threshold}).")

    if not iterable(pval_thresholds):
        pval_thresholds = [pval_thresholds]

    pval_thresholds = [float(t) for t in pval_thresholds]

    if len(pval_thresholds) < 1:
        raise InvalidConfigError("At least one p-value threshold must be provided.")

    for t in pval_thresholds:
        if not 0. < t <= 1.:
            raise InvalidConfigError(f"P-value thresholds must be in (0, 1] (got {t}).")

    if len(set(pval_thresholds)) != len(pval_thresholds):
        raise InvalidConfigError(f"P-value thresholds must be unique (got {pval_thresholds}).")

    return pval_thresholds


def effect_column_name(threshold):
    return f'b_{threshold}'


class SummaryStatAdjuster(object):
    """
    Clumping and thresholding (C+T) of GWAS summary statistics using the
    LD matrices in an `LDStore`.

    For each p-value threshold, the variants with p-value below the threshold are visited
    in ascending order of p-value (ties broken by the lexical order of the SNP rsID).
    The first variant that was not excluded yet is retained and every other candidate variant
    whose squared correlation with it exceeds `rsq_threshold` is excluded.

    The output has one row per input variant, in the input order, and one effect column per
    p-value threshold (`b_<threshold>`). Variants that were not retained at a given threshold
    have an effect of exactly zero in that column.

    Variants absent from the LD matrices have no neighbors: they are retained whenever they
    pass the p-value threshold.

    !!! seealso "See Also"
        * [adjust_stat][qgenpy.stats.adjust.clump.adjust_stat]
        * [clump_snps][qgenpy.stats.ld.utils.clump_snps]

    :ivar ld_store: An `LDStore` object.
    :ivar rsq_threshold: The r^2 threshold used for clumping.
    :ivar pval_thresholds: The list of p-value thresholds.
    """

    def __init__(self, ld_store, rsq_threshold=0.9, pval_thresholds=(5e-8, 1e-5, 1e-3, 0.01, 0.05, 0.1, 1.),
                 verbose=True):
        """
        :param ld_store: An `LDStore` object.
        :param rsq_threshold: The r^2 threshold used for clumping.
        :param pval_thresholds: A sequence of p-value thresholds.
        :param verbose: Show a progress bar.

        :raises InvalidConfigError: If the thresholds are out of range.
        """

        self.ld_store = ld_store
        self.rsq_threshold = rsq_threshold
        self.pval_thresholds = validate_clumping_parameters(rsq_threshold, pval_thresholds)
        self.verbose = verbose

    @property
    def effect_columns(self):
        return [effect_column_name(t) for t in self.pval_thresholds]

    def assign_chromosomes(self, sumstats_table):
        """
        :param sumstats_table: A `SumstatsTable` object.
        :return: An array with the chromosome of each variant (None where it could not be determined).
        """

        if 'CHR' in sumstats_table.table.columns:
            return sumstats_table.table['CHR'].values

        return self.ld_store.assign_chromosomes(sumstats_table.snps)

    def sumstats_ld(self, chromosome, snps):
        """
        Extract the LD matrix between a set of variants from the LD block of a chromosome.
        The rows/columns are in the order of `snps`; variants absent from the LD block
        have empty rows.

        :param chromosome: The chromosome.
        :param snps: An array of SNP rsIDs.

        :return: A symmetric `scipy.sparse.csr_matrix` (len(snps) x len(snps)).
        """

        try:
            return self.ld_store.get_aligned_ld(chromosome, snps)
        except NotBuiltError:
            from scipy.sparse import csr_matrix
            logger.warning(f"No LD matrix for chromosome {chromosome}: "
                           f"its {len(snps)} variants are clumped without LD information.")
            return csr_matrix((len(snps), len(snps)))

    def adjust(self, sumstats_table):
        """
        Perform clumping and thresholding on the summary statistics.

        :param sumstats_table: A `SumstatsTable` object with (at least) the `SNP`, `BETA`
        and `PVAL` (or `Z`, or `SE`) columns.

        :return: A pandas DataFrame with the identifier columns of the input (`SNP`, and `CHR`,
        `A1`, `A2` if present) and one effect column per p-value threshold.
        :raises MissingColumnError: If the summary statistics lack any of the required columns.
        """

        sumstats_table.validate_columns(['SNP', 'BETA', 'PVAL'], context="required for clumping")

        snps = sumstats_table.snps.astype(str)
        pval = np.asarray(sumstats_table.pval, dtype=np.float64)
        beta = np.asarray(sumstats_table.beta_hat, dtype=np.float64)

        out_cols = [c for c in ('CHR', 'SNP', 'A1', 'A2') if c in sumstats_table.table.columns]
        result = sumstats_table.table[out_cols].copy().reset_index(drop=True)

        retained = {t: np.zeros(len(snps), dtype=bool) for t in self.pval_thresholds}

        chrom = self.assign_chromosomes(sumstats_table)
        missing_chrom = pd.isnull(chrom)
        if missing_chrom.sum() > 0:
            logger.warning(f"{missing_chrom.sum()} variants were not found in any LD matrix; "
                           f"they have no LD neighbors.")

        groups = pd.Series(np.arange(len(snps))).groupby(pd.Series(chrom).fillna('NA').values, sort=False)

        logger.info("> Performing clumping and thresholding...")

        for c, chr_idx in tqdm(groups, total=groups.ngroups, desc='Clumping', disable=not self.verbose):

            chr_idx = chr_idx.values
            c_snps = snps[chr_idx]

            if c == 'NA':
                from scipy.sparse import csr_matrix
                r_mat = csr_matrix((len(chr_idx), len(chr_idx)))
            else:
                r_mat = self.sumstats_ld(c, c_snps)

            # Ascending p-value, ties broken by the lexical order of the rsID:
            order = np.lexsort((c_snps, pval[chr_idx]))

            for t in self.pval_thresholds:
                candidates = order[pval[chr_idx][order] <= t]
                keep = clump_snps(r_mat, candidates, rsq_threshold=self.rsq_threshold)
                retained[t][chr_idx] = keep

        for t in self.pval_thresholds:
            n_retained = retained[t].sum()
            if n_retained < 1:
                logger.warning(f"No variants passed the p-value threshold {t}; "
                               f"all effects in column {effect_column_name(t)} are zero.")
            else:
                logger.debug(f"> Retained {n_retained} variants at p-value threshold {t}.")

            result[effect_column_name(t)] = np.where(retained[t], beta, 0.)

        return result


def adjust_stat(sumstats,
                ld_store,
                rsq_threshold=0.9,
                pval_thresholds=(5e-8, 1e-5, 1e-3, 0.01, 0.05, 0.1, 1.),
                sumstats_format='qgenpy',
                verbose=True):
    """
    A convenience function to perform clumping and thresholding of GWAS summary statistics.

    :param sumstats: A `SumstatsTable`, a pandas DataFrame, or the path to a summary statistics file.
    :param ld_store: An `LDStore`, a `GenotypeCatalog` with LD matrices, or the directory of the LD matrices.
    :param rsq_threshold: The r^2 threshold used for clumping.
    :param pval_thresholds: A sequence of p-value thresholds.
    :param sumstats_format: The format of the summary statistics file (if a path is given).
    :param verbose: Show a progress bar.

    :return: A pandas DataFrame with one row per input variant and one effect column per p-value threshold.
    """

    from ...SumstatsTable import SumstatsTable
    from ...LDStore import LDStore

    if isinstance(sumstats, str):
        sumstats = SumstatsTable.from_file(sumstats, sumstats_format=sumstats_format)
    elif isinstance(sumstats, pd.DataFrame):
        sumstats = SumstatsTable(sumstats.copy())

    if isinstance(ld_store, str):
        ld_store = LDStore.from_directory(ld_store)
    elif hasattr(ld_store, 'ld_store'):
        ld_store = ld_store.ld_store

    return SummaryStatAdjuster(ld_store,
                               rsq_threshold=rsq_threshold,
                               pval_thresholds=pval_thresholds,
                               verbose=verbose).adjust(sumstats)
