import os.path as osp
import logging
import numpy as np
import pandas as pd
import zarr

from .exceptions import NotBuiltError, FormatError
from .utils.compute_utils import lookup_index
from .utils.system_utils import AtomicDirectory

logger = logging.getLogger(__name__)

CATALOG_FORMAT_VERSION = 1

# Names of the per-chromosome arrays in the saved catalog:
COLUMN_TO_ARRAY = {
    'SNP': 'snps',
    'A1': 'a1',
    'A2': 'a2',
    'POS': 'bp',
    'cM': 'cm',
    'MAF': 'maf',
    'MISSING': 'missing',
    'N': 'n',
    'qc_pass': 'qc_pass',
    'LDSCORE': 'ldscore'
}


def _pairs(d):
    # JSON attributes cannot hold numpy scalars:
    return [[int(k) if isinstance(k, (int, np.integer)) else str(k),
             int(v) if isinstance(v, (int, np.integer)) else v] for k, v in d.items()]


class GenotypeCatalog(object):
    """
    An immutable description of a prepared genotype resource: the marker table of each
    chromosome (identifiers, alleles, positions, allele frequencies, missingness, quality
    control flags and, once computed, LD scores), the BED file backing each chromosome, the
    individuals included, and the paths of the per-chromosome LD matrices.

    A catalog is built from a `GenotypeStore` (`from_genotype_store`). Quality control and LD
    computation return new catalogs (`with_qc`, `with_ld`). Catalogs are saved to, and reloaded
    from, a single Zarr group (`save`, `load`).

    The Zarr hierarchy is structured as follows:

    * `catalog.zarr`: The Zarr group.
        * `samples`: `fid`, `iid` (and `phenotype`, if set).
        * `chr_<c>`: The marker table of chromosome `c`, one array per column
        (`snps`, `a1`, `a2`, `bp`, `cm`, `maf`, `missing`, `n`, `qc_pass`, `ldscore`, ...).
        * `attrs`: `Format version`, `BED files`, `LD files`, `Chromosome counts`, `Sample size`,
        `QC parameters` and the completion flag. Mappings keyed by chromosome are stored
        as lists of `[chromosome, value]` pairs.

    !!! seealso "See Also"
        * [GenotypeStore][qgenpy.GenotypeStore.GenotypeStore]
        * [LDStore][qgenpy.LDStore.LDStore]

    :ivar _snp_tables: A dictionary of marker tables, keyed by chromosome.
    :ivar _bed_files: A dictionary of BED file paths, keyed by chromosome.
    :ivar _ld_files: A dictionary of LD store paths, keyed by chromosome.
    :ivar _sample_table: A pandas DataFrame with the `FID` and `IID` of the included individuals.
    """

    def __init__(self, snp_tables, bed_files, sample_table, ld_files=None, qc_parameters=None, genotype_store=None):
        """
        :param snp_tables: A dictionary of marker tables (pandas DataFrames), keyed by chromosome.
        :param bed_files: A dictionary of BED file paths, keyed by chromosome.
        :param sample_table: A pandas DataFrame with `FID` and `IID` columns.
        :param ld_files: A dictionary of LD store paths, keyed by chromosome.
        :param qc_parameters: The quality control thresholds used to build the catalog.
        :param genotype_store: An already opened `GenotypeStore` matching the catalog (optional).
        """

        self._snp_tables = {c: t.reset_index(drop=True).copy()
                            for c, t in sorted(snp_tables.items(), key=lambda x: x[0])}
        self._bed_files = {c: bed_files[c] for c in self._snp_tables}
        self._sample_table = sample_table.reset_index(drop=True).copy()
        self._ld_files = dict(sorted((ld_files or {}).items(), key=lambda x: x[0]))
        self._qc_parameters = dict(qc_parameters or {})

        self._genotype_store = genotype_store
        self._ld_store = None

    @classmethod
    def from_genotype_store(cls, genotype_store, verbose=True):
        """
        Build a catalog from a `GenotypeStore`: the marker statistics (allele frequency,
        missingness, heterozygosity) are computed with a sequential scan over each chromosome.

        :param genotype_store: A `GenotypeStore` object.
        :param verbose: Show a progress bar.

        :return: A `GenotypeCatalog` object.
        """

        if any('MAF' not in g.snp_table.columns for _, g in genotype_store):
            genotype_store.compute_marker_statistics(verbose=verbose)

        snp_tables = {c: g.get_snp_table().drop(columns='original_index', errors='ignore')
                      for c, g in genotype_store}

        return cls(snp_tables,
                   bed_files=genotype_store.bed_files,
                   sample_table=genotype_store.sample_table.to_table(
                       [c for c in ('FID', 'IID', 'phenotype') if c in genotype_store.sample_table.table.columns]
                   ),
                   genotype_store=genotype_store)

    @classmethod
    def from_files(cls, bed_paths, keep_samples=None, keep_file=None, extract_snps=None, extract_file=None,
                   verbose=True):
        """
        Build a catalog from PLINK BED files (see `GenotypeStore.from_files`).
        """

        from .GenotypeStore import GenotypeStore

        store = GenotypeStore.from_files(bed_paths,
                                         keep_samples=keep_samples,
                                         keep_file=keep_file,
                                         extract_snps=extract_snps,
                                         extract_file=extract_file,
                                         verbose=verbose)

        return cls.from_genotype_store(store, verbose=verbose)

    @property
    def chromosomes(self):
        return list(self._snp_tables.keys())

    @property
    def chromosome_counts(self):
        """
        :return: A dictionary with the number of markers per chromosome.
        """
        return {c: len(t) for c, t in self._snp_tables.items()}

    @property
    def m(self):
        return sum(self.chromosome_counts.values())

    @property
    def n(self):
        """
        :return: The number of individuals.
        """
        return len(self._sample_table)

    @property
    def sample_size(self):
        return self.n

    @property
    def samples(self):
        return self._sample_table['IID'].values.copy()

    @property
    def bed_files(self):
        return dict(self._bed_files)

    @property
    def ld_files(self):
        return dict(self._ld_files)

    @property
    def qc_parameters(self):
        return dict(self._qc_parameters)

    @property
    def has_ld(self):
        return len(self._ld_files) > 0

    @property
    def snps(self):
        """
        :return: A dictionary with the SNP rsIDs per chromosome.
        """
        return {c: t['SNP'].values.copy() for c, t in self._snp_tables.items()}

    @property
    def genotype_store(self):
        """
        :return: A `GenotypeStore` over the BED files, restricted to the markers and individuals of the catalog.
        The store is opened on first access.
        """

        if self._genotype_store is None:

            from .GenotypeStore import GenotypeStore

            bed_files = sorted(set(self._bed_files.values()))

            store = GenotypeStore.from_files(bed_files,
                                             keep_samples=self._sample_table['IID'].values,
                                             extract_snps=np.concatenate(list(self.snps.values())),
                                             verbose=False)
            store.genotype = {c: g for c, g in store.genotype.items() if c in self._snp_tables}

            for c in self.chromosomes:
                if c not in store or store[c].m != len(self._snp_tables[c]):
                    raise FormatError(f"The BED file of chromosome {c} does not match the catalog.")

            self._genotype_store = store

        return self._genotype_store

    @property
    def ld_store(self):
        """
        :return: An `LDStore` over the LD matrices of the catalog.
        :raises NotBuiltError: If no LD matrices were computed.
        """

        if not self.has_ld:
            raise NotBuiltError("No LD matrices were computed for this catalog. Call `with_ld` first.")

        if self._ld_store is None:
            from .LDStore import LDStore
            self._ld_store = LDStore(self._ld_files)

        return self._ld_store

    def with_qc(self,
                min_maf=None,
                max_missing=None,
                min_mac=None,
                drop_monomorphic=True,
                drop_duplicated=False,
                verbose=True):
        """
        Run quality control on the markers and return a new catalog restricted to the passing markers.
        LD matrices are not carried over, since the marker set changes.

        :param min_maf: Minimum minor allele frequency.
        :param max_missing: Maximum proportion of missing calls.
        :param min_mac: Minimum minor allele count.
        :param drop_monomorphic: Remove variants without any copy of the minor allele.
        :param drop_duplicated: Remove variants with duplicated SNP rsIDs.
        :param verbose: Show a progress bar.

        :return: A new `GenotypeCatalog`.
        :raises InvalidConfigError: If the thresholds are out of range.
        """

        from .GenotypeStore import GenotypeStore

        store = self.genotype_store
        store = GenotypeStore({c: g.copy() for c, g in store},
                              sample_table=store.sample_table,
                              threads=store.threads)

        store.run_qc(min_maf=min_maf,
                     max_missing=max_missing,
                     min_mac=min_mac,
                     drop_monomorphic=drop_monomorphic,
                     drop_duplicated=drop_duplicated,
                     verbose=verbose)

        if self.has_ld:
            logger.info("> The LD matrices are dropped from the filtered catalog.")

        qc_store = store.apply_qc()

        catalog = GenotypeCatalog.from_genotype_store(qc_store, verbose=verbose)
        catalog._qc_parameters = {
            'min_maf': min_maf,
            'max_missing': max_missing,
            'min_mac': min_mac,
            'drop_monomorphic': drop_monomorphic,
            'drop_duplicated': drop_duplicated
        }

        return catalog

    def with_ld(self, output_dir, overwrite=False, verbose=True, **builder_kwargs):
        """
        Compute the sparse LD matrices of the catalog markers and return a new catalog
        that records their paths and the LD score of each marker.

        :param output_dir: The directory where the per-chromosome LD stores are written.
        :param overwrite: If True, replace existing LD stores.
        :param verbose: Show a progress bar.
        :param builder_kwargs: Keyword arguments for `SparseLDBuilder` (e.g. `window_size`).

        :return: A new `GenotypeCatalog`.
        :raises AlreadyExistsError: If an LD store exists and `overwrite` is False.
        :raises InvalidConfigError: If the LD parameters are invalid.
        """

        from .stats.ld.estimator import SparseLDBuilder

        ld_store = SparseLDBuilder(self.genotype_store, verbose=verbose, **builder_kwargs).compute(
            output_dir, overwrite=overwrite)

        snp_tables = {}

        for c, table in self._snp_tables.items():
            table = table.copy()
            block = ld_store.get_block(c)
            pos, found = lookup_index(block.snps, table['SNP'].values)
            table['LDSCORE'] = np.where(found, block.ld_score[pos], np.nan)
            snp_tables[c] = table

        return GenotypeCatalog(snp_tables,
                               bed_files=self._bed_files,
                               sample_table=self._sample_table,
                               ld_files=ld_store.paths,
                               qc_parameters=self._qc_parameters,
                               genotype_store=self._genotype_store)

    def to_snp_table(self, col_subset=None, per_chromosome=False):
        """
        :param col_subset: The subset of columns to return.
        :param per_chromosome: If True, return a dictionary of tables keyed by chromosome.

        :return: The marker table(s).
        """

        tables = {c: (t[list(col_subset)] if col_subset is not None else t).copy()
                  for c, t in self._snp_tables.items()}

        if per_chromosome:
            return tables

        return pd.concat(list(tables.values()), ignore_index=True)

    def to_individual_table(self):
        return self._sample_table[['FID', 'IID']].copy()

    def save(self, path, overwrite=False):
        """
        Save the catalog to a Zarr group. The group is written to a temporary
        directory and moved to `path` once complete.

        :param path: The path of the Zarr group (e.g. `catalog.zarr`).
        :param overwrite: If True, replace an existing catalog.

        :return: The path of the saved catalog.
        :raises AlreadyExistsError: If `path` exists and `overwrite` is False.
        """

        logger.info(f"> Saving the genotype catalog to {path}...")

        with AtomicDirectory(path, overwrite=overwrite) as staging_dir:

            z = zarr.open_group(staging_dir, mode='w')
            z.attrs['Complete'] = False

            samples = z.create_group('samples')
            samples.array('fid', self._sample_table['FID'].values.astype(str), dtype=str)
            samples.array('iid', self._sample_table['IID'].values.astype(str), dtype=str)
            if 'phenotype' in self._sample_table.columns:
                phenotype = self._sample_table['phenotype'].values
                samples.array('phenotype', phenotype, dtype=phenotype.dtype)

            for c, table in self._snp_tables.items():
                g = z.create_group(f'chr_{c}')
                columns = []
                for col in table.columns:
                    name = COLUMN_TO_ARRAY.get(col, col)
                    values = table[col].to_numpy()
                    if values.dtype.kind in ('O', 'U', 'S'):
                        g.array(name, values.astype(str), dtype=str)
                    else:
                        g.array(name, values, dtype=values.dtype)
                    columns.append([col, name])
                g.attrs['Columns'] = columns

            z.attrs.update({
                'Format version': CATALOG_FORMAT_VERSION,
                'BED files': _pairs({c: osp.abspath(f) for c, f in self._bed_files.items()}),
                'LD files': _pairs({c: osp.abspath(f) for c, f in self._ld_files.items()}),
                'Chromosome counts': _pairs(self.chromosome_counts),
                'Sample size': self.n,
                'QC parameters': self._qc_parameters
            })
            z.attrs['Complete'] = True

        return path

    @classmethod
    def load(cls, path):
        """
        Load a catalog saved with `save`.

        :param path: The path of the Zarr group.
        :return: A `GenotypeCatalog` object.
        :raises NotBuiltError: If there is no (complete) catalog at that path.
        :raises FormatError: If the catalog has an unsupported format version or layout.
        """

        if not osp.isdir(path):
            raise NotBuiltError(f"No genotype catalog was found at {path}.")

        z = zarr.open_group(path, mode='r')

        if not z.attrs.get('Complete', False):
            raise NotBuiltError(f"The genotype catalog at {path} is incomplete.")

        if z.attrs.get('Format version') != CATALOG_FORMAT_VERSION:
            raise FormatError(f"Unsupported catalog format version: {z.attrs.get('Format version')}.")

        samples = z['samples']
        sample_table = pd.DataFrame({'FID': samples['fid'][:],
                                     'IID': samples['iid'][:]}).astype(str)
        if 'phenotype' in samples.array_keys():
            sample_table['phenotype'] = samples['phenotype'][:]

        counts = {c: m for c, m in z.attrs['Chromosome counts']}
        snp_tables = {}

        for c in counts:
            g = z[f'chr_{c}']
            table = pd.DataFrame({col: g[name][:] for col, name in g.attrs['Columns']})
            for col in table.columns:
                if table[col].dtype.kind in ('U', 'S', 'O'):
                    table[col] = table[col].astype(str)
            if len(table) != counts[c]:
                raise FormatError(f"The marker table of chromosome {c} has {len(table)} rows "
                                  f"(expected {counts[c]}).")
            snp_tables[c] = table

        return cls(snp_tables,
                   bed_files={c: f for c, f in z.attrs['BED files']},
                   sample_table=sample_table,
                   ld_files={c: f for c, f in z.attrs['LD files']},
                   qc_parameters=z.attrs.get('QC parameters', {}))

    def __repr__(self):
        return (f"GenotypeCatalog(chromosomes={self.chromosomes}, n={self.n}, m={self.m}, "
                f"ld={self.has_ld})")
