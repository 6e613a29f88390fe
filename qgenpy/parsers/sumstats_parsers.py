import logging
import numpy as np
import pandas as pd

logger = logging.getLogger(__name__)


class SumstatsParser(object):
    """
    A genetic summary statistics parser class.
    """

    def __init__(self, col_name_converter=None):
        """
        :param col_name_converter: A dictionary mapping column names
        in the original table to qgenpy's column names for the various
        summary statistics.
        """
        self.col_name_converter = col_name_converter

    def parse(self, file_name, drop_na=True, **read_csv_kwargs):
        """
        Parse a summary statistics file.
        :param file_name: The path to the summary statistics file.
        :param drop_na: Drop any entries with missing values.
        """

        # If the delimiter is not specified, assume whitespace by default:
        if 'sep' not in read_csv_kwargs and 'delimiter' not in read_csv_kwargs:
            read_csv_kwargs['sep'] = r'\s+'

        df = pd.read_csv(file_name, **read_csv_kwargs)

        if drop_na:
            df = df.dropna()

        if self.col_name_converter:
            df.rename(columns=self.col_name_converter, inplace=True)

        if 'SNP' in df.columns:
            df['SNP'] = df['SNP'].astype(str)

        return df


class plink2SumstatsParser(SumstatsParser):
    """
    A parser for plink2 `--glm` summary statistics files.
    """

    def __init__(self, col_name_converter=None):
        super().__init__(col_name_converter)

        self.col_name_converter = self.col_name_converter or {}

        self.col_name_converter.update(
            {
                '#CHROM': 'CHR',
                'ID': 'SNP',
                'P': 'PVAL',
                'OBS_CT': 'N',
                'A1_FREQ': 'MAF',
                'T_STAT': 'Z',
                'Z_STAT': 'Z',
                'LOG(OR)_SE': 'SE'
            }
        )

    def parse(self, file_name, drop_na=True, **read_csv_kwargs):
        """
        Parse a summary statistics file.
        :param file_name: The path to the summary statistics file.
        :param drop_na: Drop any entries with missing values.
        """

        df = super().parse(file_name, drop_na=drop_na, **read_csv_kwargs)

        if 'A2' not in df.columns:
            if 'OMITTED' in df.columns:
                df['A2'] = df['OMITTED']
            elif {'ALT', 'REF', 'A1'}.issubset(df.columns):
                df['A2'] = np.where(df['A1'] == df['ALT'], df['REF'], df['ALT'])
            else:
                logger.warning("The reference allele A2 could not be inferred "
                               "from the summary statistics file!")

        if 'OR' in df.columns and 'BETA' not in df.columns:
            df['BETA'] = np.log(df['OR'])

        return df


class plink1SumstatsParser(SumstatsParser):
    """
    A parser for plink1.9 `--linear` / `--assoc` summary statistics files.
    """

    def __init__(self, col_name_converter=None):
        super().__init__(col_name_converter)

        self.col_name_converter = self.col_name_converter or {}

        self.col_name_converter.update(
            {
                'BP': 'POS',
                'P': 'PVAL',
                'NMISS': 'N',
                'STAT': 'Z'
            }
        )

    def parse(self, file_name, drop_na=True, **read_csv_kwargs):

        df = super().parse(file_name, drop_na=drop_na, **read_csv_kwargs)

        if 'TEST' in df.columns:
            df = df.loc[df['TEST'] == 'ADD'].drop(columns=['TEST']).reset_index(drop=True)

        if 'OR' in df.columns and 'BETA' not in df.columns:
            df['BETA'] = np.log(df['OR'])

        return df


class COJOSumstatsParser(SumstatsParser):
    """
    A parser for COJO GWAS summary statistics files.
    """

    def __init__(self, col_name_converter=None):
        super().__init__(col_name_converter)

        self.col_name_converter = self.col_name_converter or {}

        self.col_name_converter.update(
            {
                'freq': 'MAF',
                'b': 'BETA',
                'se': 'SE',
                'p': 'PVAL'
            }
        )


class fastGWASumstatsParser(SumstatsParser):
    """
    A parser for fastGWA summary statistics files
    """

    def __init__(self, col_name_converter=None):
        super().__init__(col_name_converter)

        self.col_name_converter = self.col_name_converter or {}

        self.col_name_converter.update(
            {
                'AF1': 'MAF',
                'P': 'PVAL'
            }
        )
