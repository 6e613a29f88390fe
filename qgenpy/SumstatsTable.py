import logging
import pandas as pd
import numpy as np

from .exceptions import MissingColumnError
from .utils.compute_utils import intersect_arrays

logger = logging.getLogger(__name__)


class SumstatsTable(object):
    """
    A wrapper class for representing the summary statistics obtained from
    Genome-wide Association Studies (GWAS). GWAS software tools publish their
    results in the form of summary statistics, which include the SNP rsIDs,
    the effect/reference alleles tested, the marginal effect sizes (BETA),
    the standard errors (SE), the Z-scores, the p-values, etc.

    This class provides a common interface to access these statistics, to harmonize
    them with a reference table of variants, and to compute derived statistics
    (Z-scores, p-values, standardized marginal effects, etc.).

    The column naming convention is `SNP CHR POS A1 A2 MAF N BETA SE Z PVAL`,
    where `A1` is the effect allele and `MAF` is the frequency of `A1`.

    :ivar table: A pandas DataFrame containing the summary statistics.
    """

    def __init__(self, ss_table: pd.DataFrame):
        """
        Initialize the summary statistics table.

        :param ss_table: A pandas DataFrame containing the summary statistics.
        :raises MissingColumnError: If the table has neither `SNP` nor `CHR` & `POS`,
        or no allele information.

        !!! seealso "See Also"
            * [from_file][qgenpy.SumstatsTable.SumstatsTable.from_file]
        """
        self.table: pd.DataFrame = ss_table

        if 'SNP' not in self.table.columns and not all([col in self.table.columns for col in ('CHR', 'POS')]):
            raise MissingColumnError(['SNP'], context="a variant identifier (`SNP` or `CHR` & `POS`) is required")
        if 'A1' not in self.table.columns:
            raise MissingColumnError(['A1'], context="the effect allele is required")

        if 'SNP' in self.table.columns:
            self.table['SNP'] = self.table['SNP'].astype(str)

    @property
    def shape(self):
        """
        :return: The shape of the summary statistics table.
        """
        return self.table.shape

    def __len__(self):
        return len(self.table)

    @property
    def chromosome(self):
        """
        :return: The chromosome number if there is only one chromosome in the summary statistics.
        """
        chrom = self.chromosomes
        if chrom is not None and len(chrom) == 1:
            return chrom[0]

    @property
    def chromosomes(self):
        """
        :return: The unique chromosomes in the summary statistics table.
        """
        if 'CHR' in self.table.columns:
            return sorted(self.table['CHR'].unique())

    @property
    def m(self):
        """
        :return: The number of variants in the summary statistics table.
        """
        return len(self.table)

    @property
    def n_snps(self):
        return self.m

    @property
    def identifier_cols(self):
        if 'SNP' in self.table.columns:
            return ['SNP']
        else:
            return ['CHR', 'POS']

    @property
    def snps(self):
        """
        :return: The rsIDs associated with each variant in the summary statistics table.
        """
        return self.get_col('SNP')

    @property
    def a1(self):
        """
        :return: The effect allele of each variant.
        """
        return self.get_col('A1')

    @property
    def a2(self):
        """
        :return: The reference allele of each variant.
        """
        return self.get_col('A2')

    @property
    def bp_pos(self):
        return self.get_col('POS')

    @property
    def maf(self):
        """
        :return: The frequency of the effect allele `A1`.
        """
        return self.get_col('MAF')

    @property
    def n(self):
        """
        :return: The sample size for the association test of each variant in the summary statistics table.
        """
        return self.get_col('N')

    @property
    def n_per_snp(self):
        return self.n

    @property
    def beta_hat(self):
        """
        :return: The marginal beta from the association test of each variant on the phenotype.
        """

        beta = self.get_col('BETA')

        if beta is None:
            odds_ratio = self.get_col('OR')
            if odds_ratio is not None:
                self.table['BETA'] = np.log(odds_ratio)
                return self.table['BETA'].values
        else:
            return beta

    @property
    def marginal_beta(self):
        return self.beta_hat

    @property
    def standardized_marginal_beta(self):
        """
        !!! seealso "See Also"
            * [get_snp_pseudo_corr][qgenpy.SumstatsTable.SumstatsTable.get_snp_pseudo_corr]

        :return: The standardized marginal beta from the association test of each variant on the phenotype.
        """
        return self.get_snp_pseudo_corr()

    @property
    def z_score(self):
        """
        :return: The Z-score from the association test of each SNP on the phenotype.
        :raises MissingColumnError: If the Z-score is not available and could not be inferred from BETA and SE.
        """

        z = self.get_col('Z')
        if z is not None:
            return z

        beta = self.beta_hat
        se = self.se

        if beta is not None and se is not None:
            self.table['Z'] = beta / se
            return self.table['Z'].values

        raise MissingColumnError(['Z'], context="could not be inferred from BETA and SE")

    @property
    def standard_error(self):
        return self.get_col('SE')

    @property
    def se(self):
        """
        :return: The standard error from the association test of each variant on the phenotype.
        """
        return self.standard_error

    @property
    def pval(self):
        """
        :return: The p-value from the association test of each variant on the phenotype.
        """
        p = self.get_col('PVAL')

        if p is not None:
            return p
        else:
            from scipy import stats
            self.table['PVAL'] = 2.*stats.norm.sf(np.abs(self.z_score))
            return self.table['PVAL'].values

    @property
    def p_value(self):
        return self.pval

    @property
    def negative_log10_p_value(self):
        """
        :return: The negative log10 of the p-value (-log10(p_value)).
        """
        return -np.log10(self.pval)

    def validate_columns(self, required, context=None):
        """
        Check that the table carries (or can derive) the required columns.
        `Z` may be derived from `BETA` and `SE`, and `PVAL` from `Z`.

        :param required: A list of column names.
        :param context: A description of the operation requiring the columns (used in the error message).
        :raises MissingColumnError: If any of the columns is missing.
        """

        derivable = {
            'Z': lambda cols: 'BETA' in cols and 'SE' in cols,
            'PVAL': lambda cols: 'Z' in cols or ('BETA' in cols and 'SE' in cols),
            'BETA': lambda cols: 'OR' in cols,
        }

        cols = set(self.table.columns)
        missing = [c for c in required
                   if c not in cols and not (c in derivable and derivable[c](cols))]

        if len(missing) > 0:
            raise MissingColumnError(missing, context=context)

        for c in required:
            if c in cols and self.table[c].isnull().any():
                raise MissingColumnError([c], context=f"column `{c}` has missing values")

    def match(self, reference_table, correct_flips=True):
        """
        Match the summary statistics table with a reference table,
        correcting for potential flips in the effect alleles: signed statistics
        (BETA, STD_BETA, Z) are negated and MAF is replaced by 1 - MAF for variants whose
        alleles are swapped relative to the reference. Variants with incompatible alleles are dropped.

        :param reference_table: The SNP table to use as a reference, with the identifier columns
        (`SNP` or `CHR` & `POS`) and the alleles (`A1` & `A2`).
        :param correct_flips: If True, correct the direction of effect size
         estimates if the effect allele is reversed.
        """

        from .utils.model_utils import merge_snp_tables

        if 'A2' not in self.table.columns:
            raise MissingColumnError(['A2'], context="matching requires the reference allele")

        n_before = len(self.table)

        self.table = merge_snp_tables(ref_table=reference_table[self.identifier_cols + ['A1', 'A2']],
                                      alt_table=self.table,
                                      how='inner',
                                      correct_flips=correct_flips)

        logger.debug(f"> Matched {len(self.table)}/{n_before} variants with the reference table.")

    def filter_by_allele_frequency(self, min_maf=None, min_mac=None):
        """
        Filter variants in the summary statistics table by minimum minor allele frequency or allele count
        :param min_maf: Minimum minor allele frequency
        :param min_mac: Minimum minor allele count
        """

        maf = self.maf
        n = self.n

        if maf is None:
            return

        maf = np.minimum(maf, 1. - maf)
        keep_flag = np.ones(len(maf), dtype=bool)

        if min_mac and n is not None:
            keep_flag &= (2*maf*n).astype(np.int64) >= min_mac

        if min_maf:
            keep_flag &= maf >= min_maf

        self.filter_snps(extract_index=np.where(keep_flag)[0])

    def filter_snps(self, extract_snps=None, extract_file=None, extract_index=None):
        """
        Filter the summary statistics table to keep a subset of SNPs.
        :param extract_snps: A list or array of SNP IDs to keep.
        :param extract_file: A plink-style file containing the SNP IDs to keep.
        :param extract_index: A list or array of the indices of SNPs to retain.
        """

        assert extract_snps is not None or extract_file is not None or extract_index is not None

        if extract_file:
            from .parsers.misc_parsers import read_snp_filter_file
            extract_snps = read_snp_filter_file(extract_file)

        if extract_snps is not None:
            extract_index = intersect_arrays(self.snps, extract_snps, return_index=True)

        self.table = self.table.iloc[extract_index, ].reset_index(drop=True)

    def drop_duplicates(self):
        """
        Drop variants with duplicated rsIDs from the summary statistics table.
        """
        self.table = self.table.drop_duplicates(subset=self.identifier_cols, keep=False).reset_index(drop=True)

    def get_col(self, col_name):
        """
        :param col_name: The name of the column to extract.

        :return: The column associated with `col_name` from summary statistics table.
        """
        if col_name in self.table.columns:
            return self.table[col_name].values

    def get_chisq_statistic(self):
        """
        :return: The Chi-Squared statistic from the association test of each variant on the phenotype.
        """
        chisq = self.get_col('CHISQ')

        if chisq is None:
            self.table['CHISQ'] = self.z_score**2
            chisq = self.table['CHISQ'].values

        return chisq

    def get_snp_pseudo_corr(self):
        """

        Computes the pseudo-correlation coefficient (standardized beta) between the SNP and
        the phenotype (X_jTy / N) from GWAS summary statistics.

        This method uses Equation 15 in Mak et al. 2017

            $$
            beta =  z_j / sqrt(n - 1 + z_j^2)
            $$

        Where `z_j` is the marginal GWAS Z-score.

        :return: The pseudo-correlation coefficient between the SNP and the phenotype.
        :raises MissingColumnError: If the Z-scores or the sample size are not available.
        """

        zsc = self.z_score
        n = self.n

        if n is None:
            raise MissingColumnError(['N'], context="required for standardized marginal effects")

        return zsc / (np.sqrt(n - 1 + zsc**2))

    def get_yy_per_snp(self):
        """
        Computes the quantity (y'y)_j/n_j following SBayesR (Lloyd-Jones 2019) and Yang et al. (2012).

        (y'y)_j/n_j is defined as the empirical variance for continuous phenotypes and may be estimated
        from GWAS summary statistics by re-arranging the equation for the
        squared standard error:

            $$
            SE(b_j)^2 = (Var(y) - Var(x_j)*b_j^2) / (Var(x)*n)
            $$

        Which gives the following estimate:

            $$
            (y'y)_j / n_j = (n_j - 2)*SE(b_j)^2 + b_j^2
            $$

        :return: The quantity (y'y)_j/n_j for each SNP in the summary statistics table.
        :raises MissingColumnError: If the marginal betas, standard errors or sample sizes are not available.
        """

        self.validate_columns(['N', 'BETA', 'SE'], context="required to compute (y'y)/n")

        return (self.n - 2)*self.se**2 + self.beta_hat**2

    def split_by_chromosome(self, snps_per_chrom=None):
        """
        Split the summary statistics table by chromosome, so that we would
        have a separate `SumstatsTable` object for each chromosome.
        :param snps_per_chrom: A dictionary where the keys are the chromosome number
        and the value is an array or list of SNPs on that chromosome.

        :return: A dictionary where the keys are the chromosome number and the value is a `SumstatsTable` object.
        """

        if 'CHR' in self.table.columns:
            chrom_tables = self.table.groupby('CHR')
            return {
                c: SumstatsTable(chrom_tables.get_group(c).reset_index(drop=True))
                for c in chrom_tables.groups
            }
        elif snps_per_chrom is not None:
            chrom_dict = {
                c: SumstatsTable(pd.DataFrame({'SNP': np.asarray(snps).astype(str)}).merge(self.table))
                for c, snps in snps_per_chrom.items()
            }

            for c, ss_tab in chrom_dict.items():
                ss_tab.table['CHR'] = c

            return chrom_dict
        else:
            raise MissingColumnError(['CHR'], context="provide `snps_per_chrom` to split by chromosome")

    def to_table(self, col_subset=None):
        """
        A convenience method to extract the summary statistics table or subsets of it.

        :param col_subset: A list corresponding to a subset of columns to return.

        :return: A pandas DataFrame containing the summary statistics with the requested column subset.
        :raises MissingColumnError: If a requested column is not available and could not be derived.
        """

        col_subset = col_subset or [c for c in ['CHR', 'SNP', 'POS', 'A1', 'A2', 'MAF',
                                                'N', 'BETA', 'Z', 'SE', 'PVAL'] if c in self.table.columns]

        table = self.table.copy()

        for col in col_subset:
            if col in table.columns:
                continue
            if col == 'Z':
                table['Z'] = self.z_score
            elif col == 'PVAL':
                table['PVAL'] = self.p_value
            elif col == 'NLOG10_PVAL':
                table['NLOG10_PVAL'] = self.negative_log10_p_value
            elif col == 'CHISQ':
                table['CHISQ'] = self.get_chisq_statistic()
            elif col == 'STD_BETA':
                table['STD_BETA'] = self.get_snp_pseudo_corr()
            else:
                raise MissingColumnError([col])

        return table[list(col_subset)]

    def to_file(self, output_file, col_subset=None, **to_csv_kwargs):
        """
        A convenience method to write the summary statistics table to file.

        :param output_file: The path to the file where to write the summary statistics.
        :param col_subset: A subset of the columns to write to file.
        :param to_csv_kwargs: Keyword arguments to pass to pandas' `to_csv` method.
        """

        if 'sep' not in to_csv_kwargs and 'delimiter' not in to_csv_kwargs:
            to_csv_kwargs['sep'] = '\t'

        if 'index' not in to_csv_kwargs:
            to_csv_kwargs['index'] = False

        self.to_table(col_subset).to_csv(output_file, **to_csv_kwargs)

    @classmethod
    def from_file(cls, sumstats_file, sumstats_format='qgenpy', parser=None, **parse_kwargs):
        """
        Initialize a summary statistics table from file. The user must provide either
        the format for the summary statistics file or the parser object
        (see `parsers.sumstats_parsers`).

        :param sumstats_file: The path to the summary statistics file.
        :param sumstats_format: The format for the summary statistics file. Currently,
        we support the following summary statistics formats: `qgenpy`, `plink1.9`, `plink` or `plink2`,
        `COJO`, `fastGWA`.
        :param parser: An instance of SumstatsParser parser, implements basic parsing/conversion
        functionalities.
        :param parse_kwargs: arguments for the pandas `read_csv` function, such as the delimiter.

        :return: A `SumstatsTable` object initialized from the summary statistics file.
        """

        from .parsers.sumstats_parsers import (
            SumstatsParser, plink1SumstatsParser, plink2SumstatsParser,
            COJOSumstatsParser, fastGWASumstatsParser
        )

        if parser is None:

            sumstats_format_l = sumstats_format.lower()

            if sumstats_format_l == 'qgenpy':
                parser = SumstatsParser()
            elif sumstats_format_l in ('plink', 'plink2'):
                parser = plink2SumstatsParser()
            elif sumstats_format_l == 'plink1.9':
                parser = plink1SumstatsParser()
            elif sumstats_format_l == 'cojo':
                parser = COJOSumstatsParser()
            elif sumstats_format_l == 'fastgwa':
                parser = fastGWASumstatsParser()
            else:
                raise KeyError(f"Parsers for summary statistics format {sumstats_format} are not implemented!")

        return cls(parser.parse(sumstats_file, **parse_kwargs))
