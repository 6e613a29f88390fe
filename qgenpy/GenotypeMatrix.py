from typing import Union
import logging
import pandas as pd
import numpy as np

from .SampleTable import SampleTable
from .exceptions import NotFoundError, InvalidConfigError

logger = logging.getLogger(__name__)


class GenotypeMatrix(object):
    """
    A class to represent a genotype matrix backed by a PLINK BED file. The genotype
    matrix is a matrix where the rows represent samples and the columns represent
    genetic variants. The matrix resides on disk and is never read
    in full: this class provides methods to extract column (variant) or
    row (individual) slices of decoded allele counts, to iterate over the variants
    in chunks, and to perform computations on the genotype data.

    The genotype values are counts of the `A1` allele, i.e. in {0, 1, 2}, with `NaN`
    denoting a missing call.

    A `GenotypeMatrix` may be a view over a subset of the variants and individuals
    in the BED file: the `original_index` columns of the SNP and sample tables record
    the positions of the retained entries in the file.

    !!! seealso "See Also"
            * [GenotypeStore][qgenpy.GenotypeStore.GenotypeStore]

    :ivar sample_table: A table containing information about the samples in the genotype matrix
    (initially read from the FAM file).
    :ivar snp_table: A table containing information about the genetic variants in the genotype matrix
    (initially read from the BIM file).
    :ivar bed_file: The path to the plink BED file containing the genotype matrix.
    :ivar bed_shape: The number of individuals and variants declared for the BED file.
    :ivar threads: The number of threads used by `bed_reader` to read the genotype data.

    """

    def __init__(self,
                 sample_table: Union[pd.DataFrame, SampleTable, None] = None,
                 snp_table: Union[pd.DataFrame, None] = None,
                 bed_file: str = None,
                 bed_shape: Union[tuple, None] = None,
                 threads=1):
        """
        Initialize a GenotypeMatrix object.

        :param sample_table: A table containing information about the samples in the genotype matrix.
        :param snp_table: A table containing information about the genetic variants in the genotype matrix.
        :param bed_file: The path to the plink BED file containing the genotype matrix.
        :param bed_shape: A tuple with the number of individuals and variants in the BED file.
        If not provided, it is inferred from the sample and SNP tables.
        :param threads: The number of threads used by `bed_reader` to read the genotype data.
        """

        self.sample_table: Union[SampleTable, None] = None
        self.snp_table: Union[pd.DataFrame, None] = snp_table

        if sample_table is not None:
            self.set_sample_table(sample_table)

        if snp_table is not None and 'original_index' not in self.snp_table.columns:
            self.snp_table['original_index'] = np.arange(len(self.snp_table))

        self.bed_file = bed_file
        self.bed_shape = bed_shape or (self.sample_table.n, len(self.snp_table))

        self.threads = threads

        self._bed = None

    @classmethod
    def from_file(cls, file_path, **kwargs):
        """
        Initialize a genotype matrix object from a PLINK fileset.

        :param file_path: The path to the plink BED file (with or without the extension).
        :type file_path: str
        :param kwargs: Additional keyword arguments.

        :raises FormatError: If the BED file is malformed or its size disagrees with the
        number of individuals/variants in the FAM/BIM files.
        """

        from .parsers.plink_parsers import get_plink_files, parse_bim_file, parse_fam_file, validate_bed_file

        bed_file, _, _ = get_plink_files(file_path)

        snp_table = parse_bim_file(file_path)
        sample_table = SampleTable(parse_fam_file(file_path))

        validate_bed_file(bed_file, sample_table.n, len(snp_table))

        return cls(sample_table=sample_table,
                   snp_table=snp_table,
                   bed_file=bed_file,
                   bed_shape=(sample_table.n, len(snp_table)),
                   **kwargs)

    @property
    def bed(self):
        """
        :return: A `bed_reader` handle over the BED file. The individual and variant
        counts are passed explicitly, so the FAM/BIM files are not parsed a second time.
        """
        if self._bed is None:
            from bed_reader import open_bed
            self._bed = open_bed(self.bed_file,
                                 iid_count=self.bed_shape[0],
                                 sid_count=self.bed_shape[1],
                                 num_threads=self.threads)
        return self._bed

    @property
    def shape(self):
        """
        :return: The shape of the genotype matrix. Rows correspond to the
        number of samples and columns to the number of SNPs.
        """
        return self.n, self.m

    @property
    def n(self):
        """
        !!! seealso "See Also"
            * [sample_size][qgenpy.GenotypeMatrix.GenotypeMatrix.sample_size]

        :return: The sample size or number of individuals in the genotype matrix.
        """
        return self.sample_table.n

    @property
    def sample_size(self):
        """
        !!! seealso "See Also"
            * [n][qgenpy.GenotypeMatrix.GenotypeMatrix.n]

        :return: The sample size or number of individuals in the genotype matrix.
        """
        return self.n

    @property
    def samples(self):
        """
        :return: An array of sample IDs in the genotype matrix.
        """
        return self.sample_table.iid

    @property
    def sample_index(self):
        return self.sample_table.original_index

    @property
    def snp_index(self):
        return self.snp_table['original_index'].values

    @property
    def all_samples(self):
        """
        :return: True if the genotype matrix includes every individual of the BED file, in file order.
        """
        return self.n == self.bed_shape[0] and np.array_equal(self.sample_index, np.arange(self.n))

    @property
    def m(self):
        """
        !!! seealso "See Also"
            * [n_snps][qgenpy.GenotypeMatrix.GenotypeMatrix.n_snps]

        :return: The number of variants in the genotype matrix.
        """
        if self.snp_table is not None:
            return len(self.snp_table)

    @property
    def n_snps(self):
        """
        !!! seealso "See Also"
            * [m][qgenpy.GenotypeMatrix.GenotypeMatrix.m]

        :return: The number of variants in the genotype matrix.
        """
        return self.m

    @property
    def chromosome(self):
        """
        ..note::
        This is a convenience method that assumes that the genotype matrix contains variants
        from a single chromosome. If there are multiple chromosomes, the method will return `None`.

        :return: The chromosome associated with the variants in the genotype matrix.
        """
        chrom = self.chromosomes
        if chrom is not None and len(chrom) == 1:
            return chrom[0]

    @property
    def chromosomes(self):
        """
        :return: The unique set of chromosomes comprising the genotype matrix.
        """
        chrom = self.get_snp_attribute('CHR')
        if chrom is not None:
            return np.unique(chrom)

    @property
    def snps(self):
        """
        :return: The SNP rsIDs for variants in the genotype matrix.
        """
        return self.get_snp_attribute('SNP')

    @property
    def bp_pos(self):
        """
        :return: The basepair position for the genetic variants in the genotype matrix.
        """
        return self.get_snp_attribute('POS')

    @property
    def cm_pos(self):
        """
        :return: The position of genetic variants in the genotype matrix in units of Centi Morgan.
        :raises KeyError: If the genetic distance is not set in the genotype file.
        """
        cm = self.get_snp_attribute('cM')
        if len(set(cm)) == 1:
            raise KeyError("Genetic distance in centi Morgan (cM) is not "
                           "set in the genotype file!")
        return cm

    @property
    def a1(self):
        """
        :return: The effect allele `A1` for each genetic variant (the allele being counted).
        """
        return self.get_snp_attribute('A1')

    @property
    def a2(self):
        """
        :return: The reference allele `A2` for each genetic variant.
        """
        return self.get_snp_attribute('A2')

    @property
    def n_per_snp(self):
        """
        :return: Sample size per genetic variant (accounting for potential missing values).
        """
        return self._get_or_compute('N')

    @property
    def freq(self):
        """
        :return: The frequency of the `A1` allele for each variant in the genotype matrix.
        """
        return self._get_or_compute('FREQ')

    @property
    def maf(self):
        """
        :return: The minor allele frequency (MAF) of each variant in the genotype matrix.
        """
        return self._get_or_compute('MAF')

    @property
    def missing_rate(self):
        """
        :return: The proportion of missing calls for each variant in the genotype matrix.
        """
        return self._get_or_compute('MISSING')

    @property
    def heterozygosity(self):
        """
        :return: The observed proportion of heterozygous calls for each variant.
        """
        return self._get_or_compute('HET')

    def _get_or_compute(self, col):
        if col not in self.snp_table.columns:
            self.compute_marker_statistics()
        return self.snp_table[col].values

    def get_snp_table(self, col_subset=None):
        """
        A convenience method to extract SNP-related information from the genotype matrix.
        :param col_subset: A list of columns to extract from the SNP table.

        :return: A `pandas` DataFrame with the requested columns.
        """

        if col_subset is None:
            return self.snp_table.copy()

        for col in col_subset:
            if col in ('N', 'FREQ', 'MAF', 'MISSING', 'HET') and col not in self.snp_table.columns:
                self.compute_marker_statistics()
                break

        missing = [c for c in col_subset if c not in self.snp_table.columns]
        if len(missing) > 0:
            raise KeyError(f"Column(s) {missing} are not available in the SNP table!")

        return self.snp_table[list(col_subset)].copy()

    def get_snp_attribute(self, attr):
        """
        :param attr: The name of the attribute to extract from the SNP table.
        :return: The values of a specific attribute for each variant in the genotype matrix.
        """
        if self.snp_table is not None and attr in self.snp_table.columns:
            return self.snp_table[attr].values

    def get_snp_index(self, snps):
        """
        Map SNP identifiers to their column positions in the genotype matrix.

        :param snps: A SNP ID or an iterable of SNP IDs.
        :return: A numpy array of column positions.
        :raises NotFoundError: If any of the requested variants is absent.
        """

        from .utils.compute_utils import lookup_index, iterable

        if not iterable(snps):
            snps = [snps]

        pos, found = lookup_index(self.snps, snps)

        if not found.all():
            missing = np.asarray(snps)[~found]
            raise NotFoundError(f"Variant(s) not found in the genotype matrix: "
                                f"{', '.join(map(str, missing[:10]))}")

        return pos

    def get_sample_index(self, iids):
        """
        Map individual IDs to their row positions in the genotype matrix.

        :param iids: An individual ID or an iterable of individual IDs.
        :return: A numpy array of row positions.
        :raises NotFoundError: If any of the requested individuals is absent.
        """

        from .utils.compute_utils import lookup_index, iterable

        if not iterable(iids):
            iids = [iids]

        pos, found = lookup_index(self.samples, iids)

        if not found.all():
            missing = np.asarray(iids)[~found]
            raise NotFoundError(f"Individual(s) not found in the genotype matrix: "
                                f"{', '.join(map(str, missing[:10]))}")

        return pos

    def read_columns(self, col_idx=None):
        """
        Decode a set of variant columns of the genotype matrix.

        :param col_idx: Column positions (relative to the current SNP table), a slice,
        or None to read all the columns.

        :return: A float32 numpy array of shape (n, len(col_idx)) with counts of `A1`
        and `NaN` for missing calls.
        """

        if col_idx is None:
            col_idx = slice(None)

        file_idx = np.atleast_1d(self.snp_index[col_idx])

        if len(file_idx) < 1 or self.n < 1:
            return np.empty((self.n, len(file_idx)), dtype=np.float32)

        sample_idx = np.s_[:] if self.all_samples else self.sample_index

        return self.bed.read(index=np.s_[sample_idx, file_idx],
                             dtype='float32',
                             num_threads=self.threads)

    def read_rows(self, row_idx=None, chunk_size='auto'):
        """
        Decode a set of individual rows of the genotype matrix. Only the requested
        individuals are decoded, and the variants are read in chunks, so that the
        memory used is bounded by the size of the output.

        :param row_idx: Row positions (relative to the current sample table), a slice,
        or None to read all the rows.
        :param chunk_size: The number of variants read per chunk.

        :return: A float32 numpy array of shape (len(row_idx), m).
        """

        if row_idx is None:
            row_idx = slice(None)

        sample_idx = np.atleast_1d(self.sample_index[row_idx])
        snp_idx = self.snp_index

        rows = np.empty((len(sample_idx), self.m), dtype=np.float32)

        if len(sample_idx) < 1 or self.m < 1:
            return rows

        chunk_size = self.get_chunk_size(chunk_size)

        for start in range(0, self.m, chunk_size):
            end = min(start + chunk_size, self.m)
            rows[:, start:end] = self.bed.read(index=np.s_[sample_idx, snp_idx[start:end]],
                                               dtype='float32',
                                               num_threads=self.threads)

        return rows

    def get_columns(self, snps):
        """
        Decode the genotype columns of a set of variants, identified by their SNP IDs.
        :param snps: A SNP ID or iterable of SNP IDs.
        :raises NotFoundError: If any of the requested variants is absent.
        """
        return self.read_columns(self.get_snp_index(snps))

    def get_rows(self, iids):
        """
        Decode the genotype rows of a set of individuals, identified by their IIDs.
        :param iids: An individual ID or iterable of individual IDs.
        :raises NotFoundError: If any of the requested individuals is absent.
        """
        return self.read_rows(self.get_sample_index(iids))

    def get_chunk_size(self, chunk_size='auto', dtype=np.float32):
        """
        Determine the number of variant columns to decode per chunk.

        :param chunk_size: An integer, or `auto` to use the memory budget (`chunk_size_mb` option).
        :param dtype: The data type of the decoded chunk.
        """

        if chunk_size == 'auto':
            from . import get_option
            budget_mb = float(get_option('chunk_size_mb'))
            col_mb = max(self.n, 1) * np.dtype(dtype).itemsize / 1024 ** 2
            chunk_size = max(1, int(budget_mb // col_mb))

        chunk_size = int(chunk_size)

        if chunk_size < 1:
            raise InvalidConfigError(f"The chunk size must be a positive integer (got {chunk_size}).")

        return chunk_size

    def iter_col_chunks(self, chunk_size='auto', return_slice=False, col_idx=None):
        """
        Iterate over the genotype matrix by columns.

        :param chunk_size: The number of variants per chunk (or `auto`).
        :param return_slice: If True, return the slice of the genotype matrix corresponding to the chunk.
        :param col_idx: An optional array of column positions to restrict the iteration to.

        :return: A generator that yields chunks of the genotype matrix.
        """

        chunk_size = self.get_chunk_size(chunk_size)

        if col_idx is None:
            col_idx = np.arange(self.m)

        for start in range(0, len(col_idx), chunk_size):
            end = min(start + chunk_size, len(col_idx))
            chunk = self.read_columns(col_idx[start:end])
            if return_slice:
                yield (start, end), chunk
            else:
                yield chunk

    def compute_marker_statistics(self):
        """
        Compute per-variant summary statistics with a sequential scan over the genotype matrix.
        The following columns are added to the SNP table:

        * `N`: The number of individuals with a non-missing call.
        * `FREQ`: The frequency of the `A1` allele.
        * `MAF`: The minor allele frequency.
        * `MISSING`: The proportion of missing calls.
        * `HET`: The proportion of heterozygous calls among the non-missing calls.
        """

        n_obs, a1_count, het = [], [], []

        for chunk in self.iter_col_chunks():
            observed = ~np.isnan(chunk)
            n_obs.append(observed.sum(axis=0))
            a1_count.append(np.nansum(chunk, axis=0, dtype=np.float64))
            het.append((chunk == 1.).sum(axis=0))

        n_obs = np.concatenate(n_obs) if n_obs else np.zeros(0)
        a1_count = np.concatenate(a1_count) if a1_count else np.zeros(0)
        het = np.concatenate(het) if het else np.zeros(0)

        safe_n = np.maximum(n_obs, 1)
        freq = np.where(n_obs > 0, a1_count / (2. * safe_n), np.nan)

        self.snp_table['N'] = n_obs.astype(np.int64)
        self.snp_table['FREQ'] = freq
        self.snp_table['MAF'] = np.minimum(freq, 1. - freq)
        self.snp_table['MISSING'] = 1. - n_obs / max(self.n, 1)
        self.snp_table['HET'] = np.where(n_obs > 0, het / safe_n, np.nan)

    def set_sample_table(self, sample_table):
        """
        A convenience method set the sample table for the genotype matrix.
        This may be useful for syncing sample tables across different Genotype matrices
        corresponding to different chromosomes or genomic regions.

        :param sample_table: An instance of SampleTable or a pandas dataframe containing
        information about the samples in the genotype matrix.
        """

        if isinstance(sample_table, SampleTable):
            self.sample_table = sample_table
        elif isinstance(sample_table, pd.DataFrame):
            self.sample_table = SampleTable(sample_table)
        else:
            raise ValueError("The sample table is invalid! "
                             "Has to be either an instance of "
                             "SampleTable or pandas DataFrame.")

    def _drop_sample_dependent_stats(self):
        stat_cols = [c for c in ('N', 'FREQ', 'MAF', 'MISSING', 'HET') if c in self.snp_table.columns]
        if len(stat_cols) > 0:
            self.snp_table = self.snp_table.drop(columns=stat_cols)
            self.compute_marker_statistics()

    def filter_snps(self, extract_snps=None, extract_file=None, extract_index=None):
        """
        Filter variants from the genotype matrix. User must specify
        either a list of variants to extract, a boolean mask / positions, or the path to a
        plink-style file with the list of variants to extract.

        :param extract_snps: A list (or array) of SNP IDs to keep in the genotype matrix.
        :param extract_file: The path to a file with the list of variants to extract.
        :param extract_index: A boolean mask or integer positions of the variants to keep.
        """

        assert extract_snps is not None or extract_file is not None or extract_index is not None

        if extract_index is not None:
            self.snp_table = self.snp_table.iloc[np.asarray(extract_index)].reset_index(drop=True)
            return

        if extract_snps is None:
            from .parsers.misc_parsers import read_snp_filter_file
            extract_snps = read_snp_filter_file(extract_file)

        keep = self.snp_table['SNP'].isin(np.asarray(extract_snps).astype(str))
        self.snp_table = self.snp_table.loc[keep].reset_index(drop=True)

    def filter_by_allele_frequency(self, min_maf=None, min_mac=1):
        """
        Filter variants by minimum minor allele frequency or allele count cutoffs.

        :param min_maf: Minimum minor allele frequency
        :param min_mac: Minimum minor allele count (1 by default)
        """

        if min_mac or min_maf:

            keep_flag = np.ones(self.m, dtype=bool)

            if min_mac:
                keep_flag &= self.compute_mac() >= min_mac

            if min_maf:
                keep_flag &= self.maf >= min_maf

            self.filter_snps(extract_index=np.where(keep_flag)[0])

    def compute_mac(self):
        """
        :return: The minor allele count of each variant.
        """
        return np.round(2. * self.maf * self.n_per_snp).astype(np.int64)

    def filter_samples(self, keep_samples=None, keep_file=None):
        """
        Filter samples from the genotype matrix. User must specify
        either a list of samples to keep or the path to a plink-style file
        with the list of samples to keep.

        :param keep_samples: A list (or array) of sample IDs to keep in the genotype matrix.
        :param keep_file: The path to a file with the list of samples to keep.
        """

        self.sample_table.filter_samples(keep_samples=keep_samples, keep_file=keep_file)

        # IMPORTANT: After filtering samples, update SNP attributes that depend on the
        # samples, such as MAF and N:
        self._drop_sample_dependent_stats()

    def run_qc(self,
               min_maf=None,
               max_missing=None,
               min_mac=None,
               drop_monomorphic=True,
               drop_duplicated=False):
        """
        Annotate the variants with quality control flags. The genotype data and the set of
        variants are not altered: the outcome of each check is stored as a boolean column
        of the SNP table (True means the variant passes the check), along with an overall
        `qc_pass` flag.

        :param min_maf: Minimum minor allele frequency.
        :param max_missing: Maximum proportion of missing calls.
        :param min_mac: Minimum minor allele count.
        :param drop_monomorphic: Flag variants without any copy of the minor allele.
        :param drop_duplicated: Flag variants with duplicated SNP rsIDs.

        :raises InvalidConfigError: If the thresholds are out of range.
        """

        validate_qc_parameters(min_maf, max_missing, min_mac)

        maf = np.nan_to_num(self.maf, nan=0.)
        flags = {}

        if min_maf is not None:
            flags['qc_maf'] = maf >= min_maf
        if max_missing is not None:
            flags['qc_missing'] = self.missing_rate <= max_missing
        if min_mac is not None:
            flags['qc_mac'] = self.compute_mac() >= min_mac
        if drop_monomorphic:
            flags['qc_monomorphic'] = maf > 0.
        if drop_duplicated:
            _, inv, counts = np.unique(self.snps, return_inverse=True, return_counts=True)
            flags['qc_duplicated'] = counts[inv] == 1

        qc_pass = np.ones(self.m, dtype=bool)
        for col, flag in flags.items():
            self.snp_table[col] = flag
            qc_pass &= flag

        self.snp_table['qc_pass'] = qc_pass

        logger.debug(f"> Chromosome {self.chromosome}: {qc_pass.sum()}/{self.m} variants pass QC.")

        return qc_pass

    def score(self, beta, center=False, chunk_size='auto', flip=None):
        """
        Perform linear scoring, i.e. multiply the genotype matrix by the matrix of effect sizes, `beta`.
        Variants whose effect sizes are all zero are skipped (not decoded). Missing calls
        contribute zero to the score, or the expected dosage 2*freq if `center` is True.

        :param beta: A vector or matrix (m x k) of effect sizes for each variant in the genotype matrix.
        :param center: If True, center the genotype by 2*freq of the scored allele.
        :param chunk_size: The number of variants decoded per chunk.
        :param flip: An optional boolean mask of the variants whose effect sizes refer to `A2`.
        Their observed calls are scored as counts of `A2`, i.e. 2 - x.

        :return: A numpy array of shape (n,) or (n, k) with the scores.
        """

        beta = np.asarray(beta, dtype=np.float64)
        one_dim = beta.ndim == 1
        if one_dim:
            beta = beta[:, None]

        pgs = np.zeros((self.n, beta.shape[1]))

        active = np.where(np.any(beta != 0., axis=1))[0]

        if len(active) > 0:

            from scipy.sparse import csr_matrix

            if flip is None:
                flip = np.zeros(self.m, dtype=bool)
            else:
                flip = np.asarray(flip, dtype=bool)

            if center:
                mean = 2. * self.freq
                mean[flip] = 2. - mean[flip]

            for (start, end), chunk in self.iter_col_chunks(chunk_size=chunk_size,
                                                            return_slice=True,
                                                            col_idx=active):
                cols = active[start:end]
                chunk_flip = flip[cols]
                if chunk_flip.any():
                    chunk[:, chunk_flip] = 2. - chunk[:, chunk_flip]
                if center:
                    chunk = np.where(np.isnan(chunk), 0., chunk - mean[cols])
                else:
                    chunk = np.nan_to_num(chunk)
                pgs += csr_matrix(beta[cols]).T.dot(chunk.T).T

        if one_dim:
            return pgs[:, 0]
        return pgs

    def split_by_chromosome(self):
        """
        Split the genotype matrix by chromosome, so that we would
        have a separate `GenotypeMatrix` objects for each chromosome.
        This method returns a dictionary where the key is the chromosome number
        and the value is an object of `GenotypeMatrix` for that chromosome.
        The variants of each partition are sorted by their base pair position.

        :return: A dictionary of `GenotypeMatrix` objects, one for each chromosome.
        """

        chrom_tables = self.snp_table.groupby('CHR')

        return {
            c: self.__class__(sample_table=self.sample_table,
                              snp_table=chrom_tables.get_group(c).sort_values('POS', kind='stable').reset_index(drop=True),
                              bed_file=self.bed_file,
                              bed_shape=self.bed_shape,
                              threads=self.threads)
            for c in chrom_tables.groups
        }

    def copy(self, share_samples=True):
        """
        :param share_samples: If True, the copy shares the sample table with this object.
        :return: A shallow copy of the genotype matrix with its own SNP table.
        """
        return self.__class__(sample_table=self.sample_table if share_samples else self.sample_table.copy(),
                              snp_table=self.snp_table.copy(),
                              bed_file=self.bed_file,
                              bed_shape=self.bed_shape,
                              threads=self.threads)

    def __getstate__(self):
        state = self.__dict__.copy()
        # The BED reader is re-opened lazily in worker processes:
        state['_bed'] = None
        return state

    def __repr__(self):
        return f"{self.__class__.__name__}(chromosome={self.chromosome}, n={self.n}, m={self.m}, bed='{self.bed_file}')"


def validate_qc_parameters(min_maf=None, max_missing=None, min_mac=None):
    """
    Check the quality control thresholds.
    :raises InvalidConfigError: If any of the thresholds is out of range.
    """

    if min_maf is not None and not 0. <= min_maf <= .5:
        raise InvalidConfigError(f"The minimum MAF must be in [0, 0.5] (got {min_maf}).")
    if max_missing is not None and not 0. <= max_missing <= 1.:
        raise InvalidConfigError(f"The maximum missingness rate must be in [0, 1] (got {max_missing}).")
    if min_mac is not None and min_mac < 0:
        raise InvalidConfigError(f"The minimum minor allele count must be non-negative (got {min_mac}).")
