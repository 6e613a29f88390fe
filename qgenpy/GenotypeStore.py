from typing import Union, Dict
import logging
import numpy as np
import pandas as pd
from tqdm import tqdm

from .GenotypeMatrix import GenotypeMatrix, validate_qc_parameters
from .SampleTable import SampleTable
from .exceptions import NotFoundError, FormatError
from .utils.compute_utils import iterable
from .utils.system_utils import get_filenames

logger = logging.getLogger(__name__)


class GenotypeStore(object):
    """
    A collection of per-chromosome genotype matrices backed by PLINK BED files.
    The store provides random access to decoded genotype columns (variants) and
    rows (individuals) for any chromosome without loading whole chromosomes into
    memory, as well as sequential scans to compute marker statistics and
    quality control flags.

    All the chromosome partitions share the same `SampleTable`.

    :ivar genotype: A dictionary of `GenotypeMatrix` objects, where the key is the chromosome number.
    :ivar sample_table: A `SampleTable` object containing the sample information.
    :ivar threads: The number of threads used to read the genotype data.
    """

    def __init__(self,
                 genotype: Dict[int, GenotypeMatrix],
                 sample_table: Union[SampleTable, None] = None,
                 threads=1):
        """
        :param genotype: A dictionary of `GenotypeMatrix` objects, where the key is the chromosome number.
        :param sample_table: The shared sample table. If not provided, the sample table of the
        first genotype matrix is used.
        :param threads: The number of threads used to read the genotype data.
        """

        self.genotype = dict(sorted(genotype.items(), key=lambda x: x[0]))

        if sample_table is None and len(self.genotype) > 0:
            sample_table = next(iter(self.genotype.values())).sample_table

        self.sample_table: SampleTable = sample_table
        self.threads = threads

        self.sync_sample_tables()

    @classmethod
    def from_files(cls,
                   bed_paths,
                   keep_samples=None,
                   keep_file=None,
                   extract_snps=None,
                   extract_file=None,
                   threads=1,
                   verbose=True):
        """
        Read the genotype metadata from one or several PLINK BED filesets. Files containing
        multiple chromosomes are split into per-chromosome partitions (views over the same file).

        :param bed_paths: The path to the BED file(s). You may use a wildcard here to read files for multiple
        chromosomes.
        :param keep_samples: A vector or list of sample IDs to keep.
        :param keep_file: A path to a plink-style file containing sample IDs to keep.
        :param extract_snps: A vector or list of SNP IDs to keep.
        :param extract_file: A path to a plink-style file containing SNP IDs to keep.
        :param threads: The number of threads used to read the genotype data.
        :param verbose: Show a progress bar.

        :raises FileNotFoundError: If no BED files were found.
        :raises FormatError: If a BED file is malformed, or the files list different individuals.
        """

        if not iterable(bed_paths):
            bed_files = get_filenames(bed_paths, extension='.bed')
        else:
            bed_files = list(bed_paths)

        if len(bed_files) < 1:
            raise FileNotFoundError(f"No BED files were found at: {bed_paths}")

        logger.info("> Reading genotype metadata...")

        genotype = {}
        sample_table = None

        for bfile in tqdm(bed_files,
                          total=len(bed_files),
                          desc="Reading genotype metadata",
                          disable=not verbose):

            g = GenotypeMatrix.from_file(bfile, threads=threads)

            if sample_table is None:
                sample_table = g.sample_table
            elif not np.array_equal(sample_table.iid, g.sample_table.iid):
                raise FormatError(f"The individuals listed for {bfile} differ from those of {bed_files[0]}.")

            for c, g_c in g.split_by_chromosome().items():
                if c in genotype:
                    raise FormatError(f"Chromosome {c} is present in more than one BED file.")
                genotype[c] = g_c

        store = cls(genotype, sample_table=sample_table, threads=threads)

        if keep_samples is not None or keep_file is not None:
            store.filter_samples(keep_samples=keep_samples, keep_file=keep_file)

        if extract_snps is not None or extract_file is not None:
            store.filter_snps(extract_snps=extract_snps, extract_file=extract_file)

        return store

    @property
    def chromosomes(self):
        """
        :return: The list of chromosomes in the store.
        """
        return list(self.genotype.keys())

    @property
    def n(self):
        """
        :return: The number of individuals.
        """
        return self.sample_table.n

    @property
    def sample_size(self):
        return self.n

    @property
    def samples(self):
        """
        :return: The individual IDs.
        """
        return self.sample_table.iid

    @property
    def m(self):
        """
        :return: The total number of variants across chromosomes.
        """
        return sum(self.shapes.values())

    @property
    def n_snps(self):
        return self.m

    @property
    def shapes(self):
        """
        :return: A dictionary with the number of variants per chromosome.
        """
        return {c: g.m for c, g in self.genotype.items()}

    @property
    def snps(self):
        """
        :return: A dictionary with the SNP IDs per chromosome.
        """
        return {c: g.snps for c, g in self.genotype.items()}

    @property
    def bed_files(self):
        """
        :return: A dictionary with the BED file backing each chromosome.
        """
        return {c: g.bed_file for c, g in self.genotype.items()}

    def __getitem__(self, chromosome):
        try:
            return self.genotype[chromosome]
        except KeyError:
            raise NotFoundError(f"Chromosome {chromosome} is not present in the genotype store.")

    def __contains__(self, chromosome):
        return chromosome in self.genotype

    def __iter__(self):
        return iter(self.genotype.items())

    def __len__(self):
        return len(self.genotype)

    def sync_sample_tables(self):
        """
        Set the shared sample table on each of the genotype matrices.
        """
        for g in self.genotype.values():
            g.set_sample_table(self.sample_table)

    def get_columns(self, chromosome, snps=None, col_idx=None):
        """
        Decode genotype columns (variants) of a chromosome.

        :param chromosome: The chromosome.
        :param snps: SNP IDs of the variants to extract.
        :param col_idx: Alternatively, positions of the variants within the chromosome.

        :return: A float32 array (n x k) of `A1` counts with `NaN` for missing calls.
        :raises NotFoundError: If the chromosome or the variants are absent.
        """
        g = self[chromosome]
        if snps is not None:
            return g.get_columns(snps)
        return g.read_columns(col_idx)

    def get_rows(self, chromosome, iids=None, row_idx=None):
        """
        Decode genotype rows (individuals) of a chromosome.

        :param chromosome: The chromosome.
        :param iids: IIDs of the individuals to extract.
        :param row_idx: Alternatively, positions of the individuals in the sample table.

        :return: A float32 array (k x m) of `A1` counts with `NaN` for missing calls.
        :raises NotFoundError: If the chromosome or the individuals are absent.
        """
        g = self[chromosome]
        if iids is not None:
            return g.get_rows(iids)
        return g.read_rows(row_idx)

    def compute_marker_statistics(self, verbose=True):
        """
        Compute allele frequency, missingness and heterozygosity for every variant
        with a sequential scan over each chromosome.
        """

        logger.info("> Computing marker statistics...")

        for c, g in tqdm(self.genotype.items(),
                         total=len(self.genotype),
                         desc="Computing marker statistics",
                         disable=not verbose):
            g.compute_marker_statistics()

    def run_qc(self,
               min_maf=None,
               max_missing=None,
               min_mac=None,
               drop_monomorphic=True,
               drop_duplicated=False,
               verbose=True):
        """
        Annotate all the variants with quality control flags (see `GenotypeMatrix.run_qc`).
        The thresholds are validated before any genotype data is scanned.

        :param min_maf: Minimum minor allele frequency.
        :param max_missing: Maximum proportion of missing calls.
        :param min_mac: Minimum minor allele count.
        :param drop_monomorphic: Flag variants without any copy of the minor allele.
        :param drop_duplicated: Flag variants with duplicated SNP rsIDs.
        :param verbose: Show a progress bar.

        :return: A dictionary with the number of passing variants per chromosome.
        :raises InvalidConfigError: If the thresholds are out of range.
        """

        validate_qc_parameters(min_maf, max_missing, min_mac)

        logger.info("> Running quality control on the genotype data...")

        n_pass = {}

        for c, g in tqdm(self.genotype.items(),
                         total=len(self.genotype),
                         desc="Running QC",
                         disable=not verbose):
            n_pass[c] = int(g.run_qc(min_maf=min_maf,
                                     max_missing=max_missing,
                                     min_mac=min_mac,
                                     drop_monomorphic=drop_monomorphic,
                                     drop_duplicated=drop_duplicated).sum())

        logger.info(f"> {sum(n_pass.values())}/{self.m} variants pass quality control.")

        return n_pass

    def apply_qc(self):
        """
        :return: A new `GenotypeStore` restricted to the variants flagged as passing
        quality control. Chromosomes without passing variants are dropped.
        :raises KeyError: If `run_qc` was not called before.
        """

        genotype = {}

        for c, g in self.genotype.items():
            if 'qc_pass' not in g.snp_table.columns:
                raise KeyError(f"Quality control flags are not set for chromosome {c}. Call `run_qc` first.")

            g_c = g.copy()
            g_c.filter_snps(extract_index=np.where(g.snp_table['qc_pass'].values)[0])

            if g_c.m > 0:
                genotype[c] = g_c

        return GenotypeStore(genotype, sample_table=self.sample_table, threads=self.threads)

    def filter_snps(self, extract_snps=None, extract_file=None, chromosome=None):
        """
        Filter the variants of the store (in place).

        :param extract_snps: A list or array of SNP rsIDs to keep.
        :param extract_file: A path to a plink-style file with SNP rsIDs to keep.
        :param chromosome: Chromosome number. If specified, applies the filter to that chromosome only.
        """

        if extract_snps is None and extract_file is None:
            return

        if extract_snps is None:
            from .parsers.misc_parsers import read_snp_filter_file
            extract_snps = read_snp_filter_file(extract_file)

        chroms = [chromosome] if chromosome is not None else self.chromosomes

        for c in chroms:
            self[c].filter_snps(extract_snps=extract_snps)

            # If no SNPs remain in the genotype matrix for that chromosome, then remove it:
            if self.genotype[c].m < 1:
                del self.genotype[c]

    def filter_samples(self, keep_samples=None, keep_file=None):
        """
        Filter the individuals of the store (in place). Marker statistics that were
        already computed are updated to reflect the retained individuals.

        :param keep_samples: A list or array of sample IDs to keep.
        :param keep_file: The path to a file with the list of samples to keep.
        """

        self.sample_table.filter_samples(keep_samples=keep_samples, keep_file=keep_file)

        for g in self.genotype.values():
            g._drop_sample_dependent_stats()

    def compute_ld(self, output_dir, overwrite=False, **builder_kwargs):
        """
        Compute windowed sparse LD matrices for every chromosome and store them in `output_dir`.
        This is a convenience wrapper around `SparseLDBuilder`.

        :param output_dir: The directory where the per-chromosome LD stores are written.
        :param overwrite: If True, replace existing LD stores.
        :param builder_kwargs: Keyword arguments for `SparseLDBuilder` (e.g. `window_size`, `kb_window_size`).

        :return: An `LDStore` over the computed matrices.
        """

        from .stats.ld.estimator import SparseLDBuilder

        return SparseLDBuilder(self, **builder_kwargs).compute(output_dir, overwrite=overwrite)

    def score(self, weights, **kwargs):
        """
        Compute linear scores for each individual. This is a convenience wrapper around `ScoreProjector`.

        :param weights: A table of per-variant weights (see `ScoreProjector`).
        :param kwargs: Keyword arguments for `ScoreProjector.project`.
        """

        from .stats.score.utils import ScoreProjector

        return ScoreProjector(self).project(weights, **kwargs)

    def to_snp_table(self, col_subset=None, per_chromosome=False):
        """
        Get a dataframe of SNP data for all variants across different chromosomes.

        :param col_subset: The subset of columns to obtain.
        :param per_chromosome: If True, returns a dictionary where the key
        is the chromosome number and the value is the SNP table per chromosome.

        :return: A dataframe (or dictionary of dataframes) of SNP data.
        """

        snp_tables = {c: g.get_snp_table(col_subset=col_subset) for c, g in self.genotype.items()}

        if per_chromosome:
            return snp_tables
        else:
            return pd.concat(list(snp_tables.values()), ignore_index=True)

    def to_individual_table(self):
        """
        :return: A table of individual IDs (FID, IID).
        """
        return self.sample_table.get_individual_table()

    def __repr__(self):
        return f"GenotypeStore(chromosomes={self.chromosomes}, n={self.n}, m={self.m})"
