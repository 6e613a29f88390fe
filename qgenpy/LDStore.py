import os.path as osp
import logging
import numpy as np
import pandas as pd

from .SparseLDBlock import SparseLDBlock
from .exceptions import NotBuiltError, NotFoundError
from .utils.compute_utils import iterable, lookup_index
from .utils.system_utils import get_filenames

logger = logging.getLogger(__name__)


class LDStore(object):
    """
    A read-only collection of per-chromosome `SparseLDBlock` objects. Blocks are opened
    lazily on first request and cached for the lifetime of the object.

    :ivar paths: A dictionary mapping the chromosome to the path of its LD store.
    :ivar _blocks: The cache of opened `SparseLDBlock` objects.
    """

    def __init__(self, paths=None):
        """
        :param paths: A dictionary mapping the chromosome to the path of its LD store.
        """
        self.paths = dict(sorted((paths or {}).items(), key=lambda x: x[0]))
        self._blocks = {}

    @classmethod
    def from_directory(cls, ld_store_paths):
        """
        Discover the LD stores in a directory (or matching a wildcard / list of paths).
        The chromosome of each store is read from its attributes.

        :param ld_store_paths: A directory, a wildcard or a list of paths to Zarr LD stores.
        :return: An `LDStore` object.
        """

        if not iterable(ld_store_paths):
            if osp.isdir(ld_store_paths) and not osp.isfile(osp.join(ld_store_paths, '.zgroup')):
                ld_files = get_filenames(osp.join(ld_store_paths, 'chr_'), extension='.zarr')
            else:
                ld_files = get_filenames(ld_store_paths, extension='.zarr')
        else:
            ld_files = list(ld_store_paths)

        if len(ld_files) < 1:
            logger.warning(f"No LD matrix files were found at: {ld_store_paths}")

        logger.info("> Reading LD metadata...")

        paths = {}

        for f in ld_files:
            block = SparseLDBlock.from_path(f)
            paths[block.chromosome] = f

        return cls(paths)

    @property
    def chromosomes(self):
        """
        :return: The chromosomes for which LD blocks are available.
        """
        return list(self.paths.keys())

    def __contains__(self, chromosome):
        return chromosome in self.paths

    def __len__(self):
        return len(self.paths)

    def get_block(self, chromosome):
        """
        :param chromosome: The chromosome.
        :return: The `SparseLDBlock` for that chromosome (cached).
        :raises NotBuiltError: If no LD block was built for the chromosome.
        """

        if chromosome not in self._blocks:
            if chromosome not in self.paths:
                raise NotBuiltError(f"No LD matrix was built for chromosome {chromosome}.")
            self._blocks[chromosome] = SparseLDBlock.from_path(self.paths[chromosome])

        return self._blocks[chromosome]

    def get_scores(self, chromosome):
        """
        :param chromosome: The chromosome.
        :return: The LD scores of the variants on that chromosome.
        :raises NotBuiltError: If no LD block was built for the chromosome.
        """
        return self.get_block(chromosome).ld_score

    def find_chromosome(self, snp):
        """
        :param snp: A SNP rsID.
        :return: The chromosome whose LD block contains the variant.
        :raises NotFoundError: If the variant is absent from every LD block.
        """

        for c in self.chromosomes:
            try:
                self.get_block(c).get_snp_index(snp)
                return c
            except NotFoundError:
                continue

        raise NotFoundError(f"Variant {snp} is not present in any of the LD matrices.")

    def get_neighbors(self, snp, rsq_threshold=0., chromosome=None):
        """
        :param snp: A SNP rsID.
        :param rsq_threshold: The r^2 threshold.
        :param chromosome: The chromosome of the variant (looked up if not provided).

        :return: The set of SNP rsIDs whose squared correlation with `snp` exceeds the threshold.
        :raises NotFoundError: If the variant is absent.
        """

        if chromosome is None:
            chromosome = self.find_chromosome(snp)

        return self.get_block(chromosome).get_neighbors(snp, rsq_threshold)

    def assign_chromosomes(self, snps):
        """
        :param snps: An array of SNP rsIDs.
        :return: An object array with the chromosome of each variant (None for variants absent from every LD block).
        """

        chrom = np.full(len(snps), None, dtype=object)

        for c in self.chromosomes:
            _, found = lookup_index(self.get_block(c).snps, snps)
            chrom[found & pd.isnull(chrom)] = c

        return chrom

    def get_aligned_ld(self, chromosome, snps, fill_diagonal=False):
        """
        Extract the (symmetric) LD matrix between an arbitrary list of variants, in the order of `snps`.
        Variants absent from the LD block of the chromosome have empty rows/columns.

        :param chromosome: The chromosome.
        :param snps: An array of SNP rsIDs on that chromosome.
        :param fill_diagonal: If True, set the diagonal of the absent variants to 1, so that
        they behave as variants that are independent of all others.

        :return: A `scipy.sparse.csr_matrix` of shape (len(snps), len(snps)).
        :raises NotBuiltError: If no LD block was built for the chromosome.
        """

        from scipy.sparse import csr_matrix, diags

        k = len(snps)
        block = self.get_block(chromosome)
        positions, found = lookup_index(block.snps, snps)

        if (~found).sum() > 0:
            logger.warning(f"{(~found).sum()}/{k} variants on chromosome {chromosome} "
                           f"are absent from the LD matrix; they have no LD neighbors.")

        rows = np.where(found)[0]
        proj = csr_matrix((np.ones(len(rows)), (rows, positions[found])), shape=(k, block.n_snps))

        mat = proj @ block.load() @ proj.T

        if fill_diagonal:
            mat = mat + diags((~found).astype(np.float64), format='csr')

        mat = mat.tocsr()
        mat.sort_indices()

        return mat

    def expand_snps(self, seed_snps, rsq_threshold=0.9):
        """
        :param seed_snps: An iterable of SNP rsIDs.
        :param rsq_threshold: The r^2 threshold.

        :return: The seeds together with every variant in LD (r^2 above the threshold) with any seed.
        """
        from .stats.ld.utils import expand_snps
        return expand_snps(seed_snps, self, rsq_threshold=rsq_threshold)

    def to_snp_table(self, col_subset=None, per_chromosome=False):
        """
        :param col_subset: The subset of columns to include.
        :param per_chromosome: If True, return a dictionary of tables keyed by chromosome.

        :return: A table of the variants (and their LD scores) in the LD blocks.
        """

        tables = {c: self.get_block(c).to_snp_table(col_subset=col_subset) for c in self.chromosomes}

        if per_chromosome:
            return tables
        return pd.concat(list(tables.values()), ignore_index=True)

    def release(self):
        """
        Release the LD data held in memory by the cached blocks.
        """
        for block in self._blocks.values():
            block.release()

    def __getitem__(self, chromosome):
        return self.get_block(chromosome)

    def __repr__(self):
        return f"LDStore(chromosomes={self.chromosomes})"
