import logging
import numpy as np
import zarr
from numcodecs import Blosc

from ...exceptions import InvalidConfigError

logger = logging.getLogger(__name__)

LD_FORMAT_VERSION = 1
MISSING_POLICIES = ('impute', 'pairwise')
WINDOW_UNITS = {'window_size': 'markers', 'kb_window_size': 'kb', 'cm_window_size': 'cM'}


def validate_window(window_size=None, kb_window_size=None, cm_window_size=None):
    """
    Check that exactly one unit was used to define the LD window.

    :param window_size: The number of neighboring markers on each side of the focal marker.
    :param kb_window_size: The maximum distance in kilobases.
    :param cm_window_size: The maximum distance in centi Morgan.

    :return: A tuple of (unit, size), where unit is one of `markers`, `kb` or `cM`.
    :raises InvalidConfigError: If zero or several units are given, or if the size is negative.
    """

    given = {k: v for k, v in (('window_size', window_size),
                               ('kb_window_size', kb_window_size),
                               ('cm_window_size', cm_window_size)) if v is not None}

    if len(given) != 1:
        raise InvalidConfigError("The LD window must be specified with exactly one of "
                                 "`window_size`, `kb_window_size` or `cm_window_size`.")

    key, size = next(iter(given.items()))

    if size < 0:
        raise InvalidConfigError(f"The LD window size must be non-negative (got {size}).")

    if key == 'window_size':
        if int(size) != size:
            raise InvalidConfigError(f"The window size in markers must be an integer (got {size}).")
        size = int(size)

    return WINDOW_UNITS[key], size


def compute_ld_boundaries(m, unit, size, positions=None):
    """
    Compute the LD boundaries for each marker on a chromosome. The window of marker `i`
    is the half-open range of marker indices [start_i, end_i) that includes the focal marker
    and every marker within `size` of it (in the given unit) on either side.

    :param m: The number of markers.
    :param unit: The unit of the window (`markers`, `kb` or `cM`).
    :param size: The size of the window on each side of the focal marker.
    :param positions: The sorted positions of the markers (base pairs for `kb`, centi Morgan for `cM`).

    :return: A 2xM matrix of LD boundaries.
    """

    indices = np.arange(m)

    if unit == 'markers':
        return np.array([np.maximum(indices - size, 0),
                         np.minimum(indices + size + 1, m)], dtype=np.int64)

    positions = np.asarray(positions, dtype=np.float64)

    if unit == 'kb':
        positions = .001 * positions

    return np.array([np.searchsorted(positions, positions - size, side='left'),
                     np.searchsorted(positions, positions + size, side='right')], dtype=np.int64)


def correlation_block(x_a, x_b, missing_policy='impute'):
    """
    Compute the Pearson correlation between the columns of two genotype blocks.

    Missing calls (`NaN`) are handled according to `missing_policy`:

    * `impute`: missing calls are replaced by the mean of the marker, so that they do not
    contribute to the covariance. Both blocks are standardized over all individuals.
    * `pairwise`: for each pair of markers, only individuals observed at both markers are used.

    Markers with zero variance (over the individuals used) have zero correlation with every other marker.

    :param x_a: A genotype matrix (n x a).
    :param x_b: A genotype matrix (n x b).
    :param missing_policy: `impute` or `pairwise`.

    :return: A float64 matrix (a x b) of correlation coefficients.
    """

    if missing_policy == 'impute':
        from ..transforms.genotype import unit_norm_columns
        return unit_norm_columns(x_a).T.dot(unit_norm_columns(x_b))

    elif missing_policy == 'pairwise':

        x_a = np.asarray(x_a, dtype=np.float64)
        x_b = np.asarray(x_b, dtype=np.float64)

        m_a = (~np.isnan(x_a)).astype(np.float64)
        m_b = (~np.isnan(x_b)).astype(np.float64)
        x_a = np.nan_to_num(x_a)
        x_b = np.nan_to_num(x_b)

        n = m_a.T.dot(m_b)
        s_a = x_a.T.dot(m_b)
        s_b = m_a.T.dot(x_b)
        s_aa = (x_a ** 2).T.dot(m_b)
        s_bb = m_a.T.dot(x_b ** 2)
        s_ab = x_a.T.dot(x_b)

        with np.errstate(divide='ignore', invalid='ignore'):
            cov = s_ab - s_a * s_b / n
            var_a = s_aa - s_a ** 2 / n
            var_b = s_bb - s_b ** 2 / n
            denom = np.sqrt(var_a * var_b)
            r = np.where((n >= 2) & (var_a > 1e-12) & (var_b > 1e-12), cov / denom, 0.)

        return np.clip(np.nan_to_num(r), -1., 1.)

    else:
        raise InvalidConfigError(f"Unknown missing genotype policy: {missing_policy}. "
                                 f"Supported policies: {MISSING_POLICIES}")


def compute_windowed_ld(genotype_matrix,
                        ld_boundaries,
                        threshold=0.,
                        missing_policy='impute',
                        chunk_size='auto'):
    """
    Compute the upper triangle (without the diagonal) of the windowed LD matrix for the
    markers of a single-chromosome genotype matrix. Focal markers are processed in blocks:
    for each block, the genotype columns spanning the union of the windows are decoded once
    and the correlations are computed with a single matrix product.

    :param genotype_matrix: A `GenotypeMatrix` object for a single chromosome.
    :param ld_boundaries: A 2xM matrix of LD boundaries (see `compute_ld_boundaries`).
    :param threshold: Correlations whose absolute value is below this threshold are not stored.
    :param missing_policy: How missing genotypes are handled (see `correlation_block`).
    :param chunk_size: The number of focal markers to process per block.

    :return: A `scipy.sparse.csr_matrix` (M x M, float64) with the upper-triangular correlations.
    """

    from scipy.sparse import csr_matrix

    m = genotype_matrix.m
    block_size = genotype_matrix.get_chunk_size(chunk_size, dtype=np.float64)

    data, indices = [], []
    indptr = np.zeros(m + 1, dtype=np.int64)

    for start in range(0, m, block_size):

        end = min(start + block_size, m)
        col_end = int(ld_boundaries[1, start:end].max())

        x = genotype_matrix.read_columns(np.arange(start, col_end))
        r = correlation_block(x[:, :end - start], x, missing_policy=missing_policy)

        for i in range(start, end):
            row = r[i - start, i + 1 - start:ld_boundaries[1, i] - start]
            keep = np.where(np.abs(row) >= threshold)[0]
            data.append(row[keep])
            indices.append(keep + i + 1)
            indptr[i + 1] = len(keep)

    indptr = np.cumsum(indptr)

    if m > 0 and indptr[-1] > 0:
        data = np.concatenate(data)
        indices = np.concatenate(indices).astype(np.int32)
    else:
        data = np.zeros(0, dtype=np.float64)
        indices = np.zeros(0, dtype=np.int32)

    return csr_matrix((data, indices, indptr), shape=(m, m))


def compute_ld_scores_from_triu(data, indices, indptr):
    """
    Compute LD scores (1 + the sum of squared correlations with every other marker in the window)
    from the upper-triangular CSR representation of an LD matrix.

    :return: A float64 array of LD scores.
    """

    m = len(indptr) - 1
    data = np.asarray(data, dtype=np.float64)
    rows = np.repeat(np.arange(m), np.diff(indptr))
    r2 = data ** 2

    return 1. + np.bincount(rows, weights=r2, minlength=m) + np.bincount(indices, weights=r2, minlength=m)


def write_ld_store(store_path,
                   triu_csr,
                   metadata,
                   attrs,
                   dtype='float64',
                   compressor_name='zstd',
                   compression_level=7):
    """
    Write an LD matrix and its metadata to a Zarr group. The group layout is:

    * `matrix/data`, `matrix/indices`, `matrix/indptr`: the upper triangle (without the diagonal)
    of the LD matrix in CSR format.
    * `metadata/<key>`: per-marker arrays (`snps`, `a1`, `a2`, `bp`, `cm`, `maf`, `ldscore`).
    * The group attributes, including `Format version` and `Complete`.

    `Complete` is set to True only after every array is written.

    :param store_path: The path of the Zarr group (must not exist).
    :param triu_csr: The upper-triangular LD matrix as a `scipy.sparse.csr_matrix`.
    :param metadata: A dictionary of per-marker arrays. `ldscore` is computed if missing.
    :param attrs: A dictionary of group attributes.
    :param dtype: The data type for the stored correlations (`float32` or `float64`).
    :param compressor_name: The name of the Blosc compressor.
    :param compression_level: The compression level (1-9).
    """

    dtype = np.dtype(dtype)
    compressor = Blosc(cname=compressor_name, clevel=int(compression_level))

    z = zarr.open_group(store_path, mode='w')
    z.attrs['Complete'] = False

    data = triu_csr.data.astype(dtype)

    mat = z.create_group('matrix')
    mat.array('data', data, dtype=dtype, compressor=compressor)
    mat.array('indices', triu_csr.indices.astype(np.int32), dtype=np.int32, compressor=compressor)
    mat.array('indptr', triu_csr.indptr.astype(np.int64), dtype=np.int64, compressor=compressor)

    metadata = dict(metadata)
    if 'ldscore' not in metadata:
        metadata['ldscore'] = compute_ld_scores_from_triu(data, triu_csr.indices, triu_csr.indptr)

    meta = z.create_group('metadata')

    for key, value in metadata.items():
        if value is None:
            continue
        value = np.asarray(value)
        if np.issubdtype(value.dtype, np.floating):
            arr_dtype = np.float64
        elif np.issubdtype(value.dtype, np.integer):
            arr_dtype = np.int64
        else:
            arr_dtype = str
        meta.array(key, value, dtype=arr_dtype, compressor=compressor)

    z.attrs.update(attrs)
    z.attrs['Format version'] = LD_FORMAT_VERSION
    z.attrs['Complete'] = True

    return z


def clump_snps(r_csr, sorted_idx, rsq_threshold=.9):
    """
    Greedy LD clumping. Markers are visited in the order given by `sorted_idx`
    (e.g. ascending p-value). Each visited marker that has not been excluded yet is retained,
    and every other candidate marker whose squared correlation with it exceeds `rsq_threshold`
    is excluded.

    :param r_csr: A symmetric `scipy.sparse.csr_matrix` of correlations between the markers
    (markers with empty rows have no neighbors).
    :param sorted_idx: The candidate markers (row indices of `r_csr`) in order of priority.
    :param rsq_threshold: The r^2 threshold.

    :return: A boolean array with True for the retained markers.
    """

    n = r_csr.shape[0]

    candidate = np.zeros(n, dtype=bool)
    candidate[sorted_idx] = True
    excluded = np.zeros(n, dtype=bool)
    retained = np.zeros(n, dtype=bool)

    indptr, indices, data = r_csr.indptr, r_csr.indices, r_csr.data

    for idx in sorted_idx:

        if excluded[idx]:
            continue

        retained[idx] = True

        start, end = indptr[idx], indptr[idx + 1]
        nbrs = indices[start:end][data[start:end] ** 2 > rsq_threshold]
        nbrs = nbrs[candidate[nbrs] & ~retained[nbrs] & (nbrs != idx)]

        excluded[nbrs] = True

    return retained


def expand_snps(seed_snps, ld_store, rsq_threshold=0.9):
    """
    Given an initial set of SNPs, expand the set by adding
    "neighbors" whose squared correlation with any of the seeds is higher than
    a user-specified threshold.

    :param seed_snps: An iterable containing initial set of SNP rsIDs.
    :param ld_store: An `LDStore` (or `SparseLDBlock`) object with the LD matrices.
    :param rsq_threshold: The r^2 threshold to use for including variants.

    :return: A sorted list with the union of the seeds and their neighbors.
    """

    from ...exceptions import NotFoundError

    final_set = set(map(str, seed_snps))
    n_found = 0

    for snp in list(final_set):
        try:
            final_set |= ld_store.get_neighbors(snp, rsq_threshold)
            n_found += 1
        except NotFoundError:
            logger.debug(f"Seed SNP {snp} is not present in the LD matrices.")

    if n_found < 1:
        logger.warning("None of the seed SNPs are present in the LD matrices!")

    return sorted(final_set)
