import logging
import os.path as osp
import numpy as np
from joblib import Parallel, delayed
from tqdm import tqdm

from .utils import (validate_window, compute_ld_boundaries, compute_windowed_ld,
                    write_ld_store, MISSING_POLICIES)
from ...LDStore import LDStore
from ...exceptions import InvalidConfigError, AlreadyExistsError
from ...utils.system_utils import makedir, AtomicDirectory, available_cpu, get_memory_usage

logger = logging.getLogger(__name__)


class SparseLDBuilder(object):
    """
    A class to compute windowed (sparse) Linkage-Disequilibrium (LD) matrices from
    the genotype data in a `GenotypeStore`.

    Linkage-Disequilibrium (LD) is a measure of the SNP-by-SNP pairwise correlation between
    genetic variants in a population. LD tends to decay with genomic distance, so correlations
    are only computed between each focal variant and the variants within a window around it.
    The window may be defined with exactly one of:

    * `window_size`: The number of neighboring variants to consider on each side.
    * `kb_window_size`: The maximum distance in kilobases.
    * `cm_window_size`: The maximum distance in centi Morgan.

    Each chromosome is processed independently (and possibly in parallel) and written to its
    own Zarr store (`chr_<chromosome>.zarr`) in the output directory. A store is only moved to
    its final location once it was written completely.

    !!! seealso "See Also"
        * [SparseLDBlock][qgenpy.SparseLDBlock.SparseLDBlock]
        * [LDStore][qgenpy.LDStore.LDStore]

    :ivar genotype_store: The `GenotypeStore` with the genotype data.
    :ivar window_unit: The unit of the window (`markers`, `kb` or `cM`).
    :ivar window_size: The size of the window on each side of the focal variant.
    :ivar threshold: Correlations whose absolute value is below this threshold are not stored.
    :ivar dtype: The data type of the stored correlations.
    :ivar missing_policy: How missing genotypes are handled (`impute` or `pairwise`).
    :ivar threads: The number of chromosomes processed in parallel.
    """

    def __init__(self,
                 genotype_store,
                 window_size=None,
                 kb_window_size=None,
                 cm_window_size=None,
                 threshold=None,
                 dtype=None,
                 missing_policy='impute',
                 compressor_name=None,
                 compression_level=None,
                 chunk_size='auto',
                 threads=1,
                 verbose=True):
        """
        Initialize the LD builder. All the parameters are validated here, before any
        genotype data is read.

        :param genotype_store: A `GenotypeStore` object.
        :param window_size: The number of neighboring variants to consider on each side.
        :param kb_window_size: The maximum distance in kilobases.
        :param cm_window_size: The maximum distance in centi Morgan.
        :param threshold: The negligible threshold: correlations with absolute value below it are not
        stored (default: `ld_negligible_threshold` option).
        :param dtype: `float64` or `float32` (default: `ld_dtype` option).
        :param missing_policy: `impute` (mean-imputation) or `pairwise` (pairwise deletion).
        :param compressor_name: The name of the Blosc compressor (default: `compressor_name` option).
        :param compression_level: The compression level, 1-9 (default: `compression_level` option).
        :param chunk_size: The number of focal variants processed per block.
        :param threads: The number of chromosomes processed in parallel. Set to -1 to use
        all the available cores but one.
        :param verbose: Show a progress bar.

        :raises InvalidConfigError: If any of the parameters is invalid.
        """

        from ... import get_option

        self.genotype_store = genotype_store
        self.window_unit, self.window_size = validate_window(window_size, kb_window_size, cm_window_size)

        self.threshold = float(threshold if threshold is not None else get_option('ld_negligible_threshold'))
        if not 0. <= self.threshold < 1.:
            raise InvalidConfigError(f"The negligible threshold must be in [0, 1) (got {self.threshold}).")

        self.dtype = str(dtype or get_option('ld_dtype'))
        if self.dtype not in ('float32', 'float64'):
            raise InvalidConfigError(f"Unsupported data type for the LD matrix: {self.dtype}.")

        if missing_policy not in MISSING_POLICIES:
            raise InvalidConfigError(f"Unknown missing genotype policy: {missing_policy}. "
                                     f"Supported policies: {MISSING_POLICIES}")
        self.missing_policy = missing_policy

        self.compressor_name = compressor_name or get_option('compressor_name')
        self.compression_level = int(compression_level if compression_level is not None
                                     else get_option('compression_level'))
        if not 0 <= self.compression_level <= 9:
            raise InvalidConfigError(f"The compression level must be in [0, 9] (got {self.compression_level}).")

        if chunk_size != 'auto' and int(chunk_size) < 1:
            raise InvalidConfigError(f"The chunk size must be a positive integer (got {chunk_size}).")
        self.chunk_size = chunk_size

        if threads == -1:
            threads = available_cpu()
        if int(threads) != threads or threads < 1:
            raise InvalidConfigError(f"The number of threads must be a positive integer (got {threads}).")

        self.threads = int(threads)
        self.verbose = verbose

        if self.window_unit == 'cM':
            for c, g in self.genotype_store:
                try:
                    g.cm_pos
                except KeyError:
                    raise InvalidConfigError(f"Genetic positions (cM) are not available for chromosome {c}; "
                                             f"a centi Morgan window cannot be used.")

    @staticmethod
    def store_path(output_dir, chromosome):
        """
        :return: The path of the LD store for a chromosome in `output_dir`.
        """
        return osp.join(output_dir, f'chr_{chromosome}.zarr')

    def compute_ld_boundaries(self, genotype_matrix):
        """
        Compute the LD boundaries for the variants of a single-chromosome genotype matrix.
        :return: A 2xM matrix of [start, end) indices.
        """

        if self.window_unit == 'kb':
            positions = genotype_matrix.bp_pos
        elif self.window_unit == 'cM':
            positions = genotype_matrix.cm_pos
        else:
            positions = None

        return compute_ld_boundaries(genotype_matrix.m, self.window_unit, self.window_size, positions)

    def store_attributes(self, genotype_matrix):
        return {
            'Chromosome': int(genotype_matrix.chromosome),
            'Sample size': int(genotype_matrix.n),
            'Window unit': self.window_unit,
            'Window size': self.window_size,
            'Negligible threshold': self.threshold,
            'Missing genotype policy': self.missing_policy,
        }

    def compute(self, output_dir, overwrite=False, chromosomes=None) -> LDStore:
        """
        Compute the LD matrices and store them in Zarr format.

        :param output_dir: The directory where the per-chromosome LD stores are written.
        :param overwrite: If True, replace existing LD stores. Otherwise, raise `AlreadyExistsError`
        if any of them exists (checked before any computation starts).
        :param chromosomes: A subset of the chromosomes to process (default: all).

        :return: An `LDStore` over the computed matrices.
        :raises AlreadyExistsError: If an LD store exists and `overwrite` is False.
        """

        chromosomes = chromosomes or self.genotype_store.chromosomes
        paths = {c: self.store_path(output_dir, c) for c in chromosomes}

        if not overwrite:
            existing = [p for p in paths.values() if osp.exists(p)]
            if len(existing) > 0:
                raise AlreadyExistsError(f"LD matrices already exist: {', '.join(existing)}. "
                                         f"Pass `overwrite=True` to recompute them.")

        # Fail early on unknown chromosomes:
        genotype = {c: self.genotype_store[c] for c in chromosomes}

        makedir(output_dir)

        logger.info("> Computing LD matrices...")

        if self.threads > 1 and len(chromosomes) > 1:
            Parallel(n_jobs=min(self.threads, len(chromosomes)))(
                delayed(build_chromosome_ld)(self, genotype[c], paths[c], overwrite) for c in chromosomes
            )
        else:
            for c in tqdm(chromosomes, total=len(chromosomes), desc='Computing LD matrices',
                          disable=not self.verbose):
                build_chromosome_ld(self, genotype[c], paths[c], overwrite)

        logger.debug(f"> Memory usage after computing LD: {get_memory_usage():.1f} MB")

        return LDStore(paths)


def build_chromosome_ld(builder, genotype_matrix, store_path, overwrite=False):
    """
    Compute and write the LD matrix of a single chromosome. The matrix is first written
    to a temporary sibling directory, which is renamed to `store_path` on success.

    :param builder: The `SparseLDBuilder` with the parameters of the computation.
    :param genotype_matrix: A single-chromosome `GenotypeMatrix`.
    :param store_path: The final path of the LD store.
    :param overwrite: If True, replace an existing store.

    :return: The path of the LD store.
    """

    logger.debug(f"> Computing LD for chromosome {genotype_matrix.chromosome} "
                 f"({genotype_matrix.m} variants, {genotype_matrix.n} individuals).")

    ld_boundaries = builder.compute_ld_boundaries(genotype_matrix)

    triu = compute_windowed_ld(genotype_matrix,
                               ld_boundaries,
                               threshold=builder.threshold,
                               missing_policy=builder.missing_policy,
                               chunk_size=builder.chunk_size)

    try:
        cm = genotype_matrix.cm_pos
    except KeyError:
        cm = None

    metadata = {
        'snps': genotype_matrix.snps.astype(str),
        'a1': genotype_matrix.a1.astype(str),
        'a2': genotype_matrix.a2.astype(str),
        'bp': genotype_matrix.bp_pos.astype(np.int64),
        'cm': cm,
        'maf': genotype_matrix.maf,
    }

    with AtomicDirectory(store_path, overwrite=overwrite) as staging_dir:
        write_ld_store(staging_dir,
                       triu,
                       metadata,
                       builder.store_attributes(genotype_matrix),
                       dtype=builder.dtype,
                       compressor_name=builder.compressor_name,
                       compression_level=builder.compression_level)

    return store_path
