from typing import Union
import numpy as np
import pandas as pd

from .exceptions import NotFoundError


class SampleTable(object):
    """
    A class to represent sample (individual) information in the context of a
    genotype matrix. The sample table is a wrapper around a `pandas.DataFrame`
    object that contains the `FID`, `IID` of each individual and (optionally)
    a phenotype column. Each individual also carries an `original_index`, its
    ordinal position in the genotype file, which is preserved through filtering.

    :ivar table: The sample table as a pandas `DataFrame`.
    """

    def __init__(self, table: Union[pd.DataFrame, None] = None):
        """
        Initialize the sample table object.
        :param table: A pandas DataFrame with the sample information.
        """

        self.table: Union[pd.DataFrame, None] = table

        if self.table is not None and 'original_index' not in self.table.columns:
            self.table['original_index'] = np.arange(len(self.table))

    @property
    def shape(self):
        """
        :return: The shape of the sample table (mainly sample size) as a tuple (n,).
        """
        return (self.n,)

    @property
    def n(self):
        """
        !!! seealso "See Also"
            * [sample_size][qgenpy.SampleTable.SampleTable.sample_size]

        :return: The sample size (number of individuals) in the sample table.
        """
        return len(self.table)

    @property
    def sample_size(self):
        """
        !!! seealso "See Also"
            * [n][qgenpy.SampleTable.SampleTable.n]

        :return: The sample size (number of individuals) in the sample table.
        """
        return self.n

    @property
    def iid(self):
        """
        :return: The individual ID of each individual in the sample table.
        """
        if self.table is not None:
            return self.table['IID'].values

    @property
    def fid(self):
        """
        :return: The family ID of each individual in the sample table.
        """
        if self.table is not None:
            return self.table['FID'].values

    @property
    def phenotype(self):
        """
        :return: The phenotype column from the sample table.
        :raises KeyError: If the phenotype is not set.
        """
        if self.table is not None:
            try:
                return self.table['phenotype'].values
            except KeyError:
                raise KeyError("The phenotype is not set!")

    @property
    def original_index(self):
        """
        :return: The original index of each individual in the sample table (before applying any filters).
        """
        if self.table is not None:
            return self.table['original_index'].values

    def get_sample_index(self, iids):
        """
        Map individual IDs to their (file-level) original indices.

        :param iids: An individual ID or an iterable of individual IDs.
        :return: A numpy array with the original indices.
        :raises NotFoundError: If any of the requested individuals is absent.
        """

        from .utils.compute_utils import lookup_index, iterable

        if not iterable(iids):
            iids = [iids]

        pos, found = lookup_index(self.iid, iids)

        if not found.all():
            missing = np.asarray(iids)[~found]
            raise NotFoundError(f"Individual(s) not found in the sample table: {', '.join(map(str, missing[:10]))}")

        return self.original_index[pos]

    def filter_samples(self, keep_samples=None, keep_file=None):
        """
        Filter samples from the samples table. User must specify
        either a list of samples to keep or the path to a file
        with the list of samples to keep.

        :param keep_samples: A list (or array) of sample IDs to keep.
        :param keep_file: The path to a file with the list of samples to keep.
        """

        assert keep_samples is not None or keep_file is not None

        if keep_samples is None:
            from .parsers.misc_parsers import read_sample_filter_file
            keep_samples = read_sample_filter_file(keep_file)

        self.table = self.table.loc[self.table['IID'].isin(np.asarray(keep_samples).astype(str))]
        self.table = self.table.reset_index(drop=True)

    def to_table(self, col_subset=None):
        """
        Get the sample table as a pandas DataFrame.

        :param col_subset: A subset of the columns to include in the table.
        :return: A pandas DataFrame with the sample information.
        """
        if col_subset is not None:
            return self.table[list(col_subset)]
        else:
            return self.table

    def get_individual_table(self):
        """
        :return: A table of individual IDs (FID, IID) present in the sample table.
        """
        return self.to_table(col_subset=['FID', 'IID'])

    def copy(self):
        """
        :return: A copy of the sample table.
        """
        return SampleTable(self.table.copy())

    def __len__(self):
        return self.n
