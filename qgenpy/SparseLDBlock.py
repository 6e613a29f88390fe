import os.path as osp
import numpy as np
import pandas as pd
import zarr

from .exceptions import NotBuiltError, NotFoundError, FormatError


class SparseLDBlock(object):
    """
    A class that represents a windowed (sparse) Linkage-Disequilibrium (LD) matrix for
    a single chromosome. Correlations between markers farther apart than the window used
    at construction are exactly zero and are not stored. The matrix is symmetric with unit
    diagonal, so only the strict upper triangle is stored on disk.

    The Zarr hierarchy is structured as follows:

    * `chr_22.zarr`: The Zarr group.
        * `matrix`: The subgroup containing the upper triangle of the LD matrix in Scipy Sparse CSR format.
            * `data`: The array containing the stored correlation coefficients.
            * `indices`: The array containing the column index of each stored entry.
            * `indptr`: The array containing the index pointers for the CSR matrix.
        * `metadata`: The subgroup containing the metadata for variants included in the LD matrix.
            * `snps`, `a1`, `a2`, `bp`, `cm`, `maf`, `ldscore`
        * `attrs`: A JSON-style metadata object with the format version, chromosome, sample size,
        the window unit and size, the negligible threshold, the missing genotype policy and
        the completion flag.

    :ivar _zg: The Zarr group object containing the LD matrix and its metadata.
    :ivar _csr: A cached symmetric `scipy.sparse.csr_matrix` (including the unit diagonal).
    :ivar _snp_index: A cached mapping from SNP ID to row index.
    """

    def __init__(self, zarr_group):
        """
        Initialize a `SparseLDBlock` object from a Zarr group store.

        :param zarr_group: The Zarr group object that stores the LD matrix.
        :raises NotBuiltError: If the store was not written completely.
        :raises FormatError: If the store does not have the expected layout.
        """

        if not zarr_group.attrs.get('Complete', False):
            raise NotBuiltError(f"The LD store at {zarr_group.store.path} is incomplete.")

        if 'matrix' not in list(zarr_group.group_keys()):
            raise FormatError("The LD store does not contain a `matrix` group.")

        arr_keys = list(zarr_group['matrix'].array_keys())
        if not all([arr in arr_keys for arr in ('data', 'indices', 'indptr')]):
            raise FormatError("The LD store does not contain the arrays of a CSR matrix.")

        self._zg = zarr_group
        self._csr = None
        self._snp_index = None

    @classmethod
    def from_path(cls, ld_store_path):
        """
        Initialize a `SparseLDBlock` object from a pre-computed Zarr group store.

        :param ld_store_path: The path to the Zarr group store.
        :return: A `SparseLDBlock` object.
        :raises NotBuiltError: If there is no (complete) LD store at that path.
        """

        if not osp.isdir(ld_store_path):
            raise NotBuiltError(f"No LD store was found at {ld_store_path}.")

        try:
            ld_group = zarr.open_group(ld_store_path, mode='r')
        except (zarr.errors.GroupNotFoundError, ValueError) as e:
            raise NotBuiltError(f"No LD store was found at {ld_store_path}.") from e

        return cls(ld_group)

    @property
    def store(self):
        return self._zg.store

    @property
    def path(self):
        """
        :return: The path of the Zarr group on the filesystem.
        """
        return self._zg.store.path

    @property
    def n_snps(self):
        """
        :return: The number of variants in the LD matrix.
        """
        return self._zg['matrix/indptr'].shape[0] - 1

    @property
    def shape(self):
        return self.n_snps, self.n_snps

    @property
    def format_version(self):
        return self.get_store_attr('Format version')

    @property
    def chromosome(self):
        """
        :return: The chromosome for which the LD matrix was calculated.
        """
        return self.get_store_attr('Chromosome')

    @property
    def sample_size(self):
        """
        :return: The sample size used to compute the LD matrix.
        """
        return self.get_store_attr('Sample size')

    @property
    def window_unit(self):
        """
        :return: The unit of the LD window (`markers`, `kb` or `cM`).
        """
        return self.get_store_attr('Window unit')

    @property
    def window_size(self):
        """
        :return: The size of the LD window on each side of the focal marker.
        """
        return self.get_store_attr('Window size')

    @property
    def negligible_threshold(self):
        """
        :return: The absolute correlation below which entries were not stored.
        """
        return self.get_store_attr('Negligible threshold')

    @property
    def missing_policy(self):
        """
        :return: How missing genotypes were handled when computing the correlations.
        """
        return self.get_store_attr('Missing genotype policy')

    @property
    def stored_dtype(self):
        return self._zg['matrix/data'].dtype

    @property
    def data(self):
        return self._zg['matrix/data'][:]

    @property
    def indices(self):
        return self._zg['matrix/indices'][:]

    @property
    def indptr(self):
        return self._zg['matrix/indptr'][:]

    @property
    def snps(self):
        return self.get_metadata('snps')

    @property
    def a1(self):
        return self.get_metadata('a1')

    @property
    def a2(self):
        return self.get_metadata('a2')

    @property
    def maf(self):
        return self.get_metadata('maf', required=False)

    @property
    def bp_position(self):
        return self.get_metadata('bp')

    @property
    def cm_position(self):
        return self.get_metadata('cm', required=False)

    @property
    def ld_score(self):
        """
        :return: The LD score of each variant (1 + the sum of squared correlations
        with the other variants in its window).
        """
        return self.get_metadata('ldscore')

    @property
    def in_memory(self):
        return self._csr is not None

    def get_metadata(self, key, required=True):
        """
        Get the metadata associated with each variant in the LD matrix.

        :param key: The key for the metadata item.
        :param required: If False, return None when the item is not set.

        :return: The metadata item for each variant in the LD matrix.
        :raises KeyError: if the metadata item is not set.
        """
        try:
            return self._zg[f'metadata/{key}'][:]
        except KeyError:
            if required:
                raise KeyError(f"LD matrix metadata item {key} is not set!")

    def get_store_attr(self, attr):
        """
        :param attr: The attribute name.
        :return: The value for the attribute.
        :raises KeyError: if the attribute is not set.
        """
        return self._zg.attrs[attr]

    def list_store_attributes(self):
        """
        :return: A list of all the attributes associated with the LD matrix.
        """
        return list(self._zg.attrs.keys())

    def get_snp_index(self, snp):
        """
        :param snp: A SNP rsID.
        :return: The row index of the variant in the LD matrix.
        :raises NotFoundError: If the variant is absent.
        """

        if self._snp_index is None:
            self._snp_index = pd.Index(self.snps.astype(str))

        try:
            return self._snp_index.get_loc(str(snp))
        except KeyError:
            raise NotFoundError(f"Variant {snp} is not present in the LD matrix of chromosome {self.chromosome}.")

    def load(self, dtype=np.float64):
        """
        Load the LD matrix into memory as a symmetric `scipy.sparse.csr_matrix`
        (including the unit diagonal). The matrix is cached on the object.

        :param dtype: The data type of the in-memory matrix.
        :return: The symmetric CSR matrix.
        """

        if self._csr is None or self._csr.dtype != np.dtype(dtype):

            from scipy.sparse import csr_matrix, identity

            m = self.n_snps
            triu = csr_matrix((self.data.astype(dtype), self.indices, self.indptr), shape=(m, m))
            self._csr = (triu + triu.T + identity(m, dtype=dtype, format='csr')).tocsr()
            self._csr.sort_indices()

        return self._csr

    def release(self):
        """
        Release the LD data from memory.
        """
        self._csr = None

    def to_csr(self, symmetric=True, include_diagonal=True, dtype=np.float64):
        """
        :param symmetric: If True, return the full symmetric matrix. Otherwise, the upper triangle.
        :param include_diagonal: If True, include the unit diagonal.
        :param dtype: The data type of the matrix.

        :return: The LD matrix as a `scipy.sparse.csr_matrix`.
        """

        from scipy.sparse import csr_matrix, identity, triu as sp_triu

        if symmetric:
            mat = self.load(dtype=dtype)
            if not include_diagonal:
                mat = (mat - identity(self.n_snps, dtype=dtype, format='csr')).tocsr()
                mat.eliminate_zeros()
            return mat

        m = self.n_snps
        mat = csr_matrix((self.data.astype(dtype), self.indices, self.indptr), shape=(m, m))
        if include_diagonal:
            mat = sp_triu(mat + identity(m, dtype=dtype, format='csr'), format='csr')
        return mat

    def getrow(self, index, symmetric=True, return_indices=False):
        """
        Extract a single row from the LD matrix.

        :param index: The index of the row to extract.
        :param symmetric: If True, return the correlations with the variants on both sides of the
        focal variant (including the unit diagonal). Otherwise, only the stored upper-triangular part.
        :param return_indices: If True, return the indices of the non-zero elements of that row.

        :return: The requested row of the LD matrix.
        """

        if symmetric:
            mat = self.load()
            start, end = mat.indptr[index], mat.indptr[index + 1]
            data, indices = mat.data[start:end], mat.indices[start:end]
        else:
            start, end = self._zg['matrix/indptr'][index:index + 2]
            data = self._zg['matrix/data'][start:end].astype(np.float64)
            indices = self._zg['matrix/indices'][start:end]

        if return_indices:
            return data, indices
        return data

    def get_neighbors(self, snp, rsq_threshold=0.):
        """
        :param snp: A SNP rsID (or the integer row index of the variant).
        :param rsq_threshold: The r^2 threshold.

        :return: The set of SNP rsIDs whose squared correlation with `snp` exceeds the threshold.
        :raises NotFoundError: If the variant is absent.
        """

        index = snp if isinstance(snp, (int, np.integer)) else self.get_snp_index(snp)

        r, indices = self.getrow(index, return_indices=True)
        keep = indices[(r ** 2 > rsq_threshold) & (indices != index)]

        return set(self.snps[keep].astype(str))

    def compute_ld_scores(self):
        """
        Compute the LD scores from the stored correlations.
        :return: An array of LD scores for each variant in the LD matrix.
        """
        from .stats.ld.utils import compute_ld_scores_from_triu
        return compute_ld_scores_from_triu(self.data, self.indices, self.indptr)

    def validate(self):
        """
        Checks that the `SparseLDBlock` object has correct structure and
        checks its contents for validity. Specifically, we check that:

        * The dimensions of the matrix and its associated metadata are matching.
        * The index pointer is valid and its contents make sense.
        * The stored entries are in the strict upper triangle, in range and finite.

        :return: True if the matrix has the correct structure.
        :raises FormatError: If the matrix or some of its entries are not valid.
        """

        m = self.n_snps

        for attr in ('snps', 'a1', 'a2', 'maf', 'bp_position', 'cm_position', 'ld_score'):
            attribute = getattr(self, attr)
            if attribute is not None and len(attribute) != m:
                raise FormatError(f"Invalid LD matrix: Dimensions for attribute {attr} are not aligned!")

        indptr = self.indptr
        data = self.data
        indices = self.indices

        if indptr[0] != 0 or np.diff(indptr).min(initial=0) < 0:
            raise FormatError("The index pointer entries are not increasing!")

        if indptr[-1] != data.shape[0] or data.shape[0] != indices.shape[0]:
            raise FormatError("The last entry of the index pointer does not match the shape of the data!")

        rows = np.repeat(np.arange(m), np.diff(indptr))
        if np.any(indices <= rows) or np.any(indices >= m):
            raise FormatError("Stored entries must be in the strict upper triangle of the matrix!")

        if not np.all(np.isfinite(data)) or np.any(np.abs(data) > 1. + 1e-6):
            raise FormatError("The LD matrix contains correlations that are not finite or outside [-1, 1]!")

        return True

    def to_snp_table(self, col_subset=None):
        """
        :param col_subset: The subset of columns to add to the table. If None, it returns
        all available columns.

        :return: A `pandas` dataframe of the SNP attributes and metadata for variants
        included in the LD matrix.
        """

        col_subset = col_subset or ['CHR', 'SNP', 'POS', 'A1', 'A2', 'MAF', 'LDScore']

        table = pd.DataFrame({'SNP': self.snps.astype(str)})

        for col in col_subset:
            if col == 'CHR':
                table['CHR'] = self.chromosome
            if col == 'POS':
                table['POS'] = self.bp_position
            if col == 'cM':
                table['cM'] = self.cm_position
            if col == 'A1':
                table['A1'] = self.a1
            if col == 'A2':
                table['A2'] = self.a2
            if col == 'MAF':
                table['MAF'] = self.maf
            if col == 'LDScore':
                table['LDScore'] = self.ld_score

        return table[list(col_subset)]

    def summary(self):
        """
        :return: A `pandas` dataframe with summary of the main attributes of the LD matrix.
        """

        return pd.DataFrame([
            {'LD Matrix property': 'Chromosome', 'Value': self.chromosome},
            {'LD Matrix property': 'Shape', 'Value': self.shape},
            {'LD Matrix property': 'Stored data type', 'Value': self.stored_dtype},
            {'LD Matrix property': 'Stored entries', 'Value': self._zg['matrix/data'].shape[0]},
            {'LD Matrix property': 'Window', 'Value': f'{self.window_size} ({self.window_unit})'},
            {'LD Matrix property': 'Missing genotype policy', 'Value': self.missing_policy},
            {'LD Matrix property': 'Path', 'Value': self.path},
            {'LD Matrix property': 'In memory?', 'Value': self.in_memory},
        ]).set_index('LD Matrix property')

    def __repr__(self):
        return self.summary().to_string()

    def __getstate__(self):
        return self.path

    def __setstate__(self, state):
        self._zg = zarr.open_group(state, mode='r')
        self._csr = None
        self._snp_index = None

    def __len__(self):
        return self.n_snps

    def __getitem__(self, item):
        """
        Access the LD matrix entries via the `[]` operator:

        * A single index or SNP rsID returns the symmetric row as a dense array.
        * A pair of indices or SNP rsIDs returns the correlation between the two variants.
        """

        if isinstance(item, tuple):
            i, j = [x if isinstance(x, (int, np.integer)) else self.get_snp_index(x) for x in item]
            return self.load()[i, j]

        i = item if isinstance(item, (int, np.integer)) else self.get_snp_index(item)
        return self.load()[i].toarray().ravel()
