import os.path as osp
import numpy as np
import pandas as pd

from ..exceptions import FormatError

# The first three bytes of a PLINK 1 BED file:
BED_MAGIC = (0x6c, 0x1b)
BED_SNP_MAJOR = 0x01
BED_HEADER_SIZE = 3


def get_plink_files(plink_bfile):
    """
    Given a path to a PLINK fileset (with or without the `.bed` extension),
    return the paths to the `.bed`, `.bim` and `.fam` files.

    :param plink_bfile: The path to the plink bfile (with or without the extension).
    :return: A tuple of paths `(bed, bim, fam)`.
    """
    prefix = plink_bfile[:-4] if plink_bfile.endswith('.bed') else plink_bfile
    return prefix + '.bed', prefix + '.bim', prefix + '.fam'


def parse_bim_file(plink_bfile):
    """
    From the plink documentation:
    https://www.cog-genomics.org/plink/1.9/formats#bim

        A text file with no header line, and one line per variant with the following six fields:

        - Chromosome code (either an integer, or 'X'/'Y'/'XY'/'MT'; '0' indicates unknown) or name
        - Variant identifier
        - Position in morgans or centimorgans (safe to use dummy value of '0')
        - Base-pair coordinate (1-based; limited to 231-2)
        - Allele 1 (corresponding to clear bits in .bed; usually minor)
        - Allele 2 (corresponding to set bits in .bed; usually major)

    :param plink_bfile: The path to the plink bfile (with or without the extension).
    :type plink_bfile: str

    :raises FormatError: If the file does not have six columns.
    """

    _, bim_file, _ = get_plink_files(plink_bfile)

    try:
        bim_df = pd.read_csv(bim_file,
                             sep=r'\s+',
                             header=None,
                             names=['CHR', 'SNP', 'cM', 'POS', 'A1', 'A2'],
                             dtype={
                                 'CHR': int,
                                 'SNP': str,
                                 'cM': np.float32,
                                 'POS': np.int32,
                                 'A1': str,
                                 'A2': str
                             })
    except ValueError as e:
        raise FormatError(f"Malformed BIM file {bim_file}: {e}") from e

    if bim_df[['SNP', 'A1', 'A2']].isnull().any().any():
        raise FormatError(f"Malformed BIM file {bim_file}: expected six fields per line.")

    return bim_df


def parse_fam_file(plink_bfile):
    """
    From the plink documentation:
    https://www.cog-genomics.org/plink/1.9/formats#fam

        A text file with no header line, and one line per sample with the following six fields:

        - Family ID ('FID')
        - Within-family ID ('IID'; cannot be '0')
        - Within-family ID of father ('0' if father isn't in dataset)
        - Within-family ID of mother ('0' if mother isn't in dataset)
        - Sex code ('1' = male, '2' = female, '0' = unknown)
        - Phenotype value ('1' = control, '2' = case, '-9'/'0'/non-numeric = missing data if case/control)

    :param plink_bfile: The path to the plink bfile (with or without the extension).
    :type plink_bfile: str
    """

    _, _, fam_file = get_plink_files(plink_bfile)

    fam_df = pd.read_csv(fam_file,
                         sep=r'\s+',
                         header=None,
                         usecols=list(range(6)),
                         names=['FID', 'IID', 'fatherID', 'motherID', 'sex', 'phenotype'],
                         dtype={'FID': str,
                                'IID': str,
                                'fatherID': str,
                                'motherID': str,
                                'sex': np.float32,
                                'phenotype': np.float32
                                },
                         na_values={
                             'phenotype': [-9.],
                             'sex': [0]
                         })

    # If the phenotype is all null or unknown, drop the column:
    if fam_df['phenotype'].isnull().all():
        fam_df.drop('phenotype', axis=1, inplace=True)

    # If the sex column is all null or unknown, drop the column:
    if fam_df['sex'].isnull().all():
        fam_df.drop('sex', axis=1, inplace=True)

    return fam_df


def bed_bytes_per_snp(n_samples):
    """
    :param n_samples: The number of individuals in the FAM file.
    :return: The number of bytes occupied by a single variant record in SNP-major mode.
    """
    return (n_samples + 3) // 4


def validate_bed_file(bed_file, n_samples, n_snps):
    """
    Check the header of a BED file and that its size agrees with the
    number of individuals and variants declared in the FAM and BIM files.

    :param bed_file: The path to the `.bed` file.
    :param n_samples: The number of individuals listed in the FAM file.
    :param n_snps: The number of variants listed in the BIM file.

    :raises FormatError: If the magic number is wrong, the file is in individual-major mode,
    or the file is truncated / padded relative to the declared dimensions.
    """

    if not osp.isfile(bed_file):
        raise FileNotFoundError(f"BED file not found: {bed_file}")

    with open(bed_file, 'rb') as f:
        header = f.read(BED_HEADER_SIZE)

    if len(header) < BED_HEADER_SIZE or tuple(header[:2]) != BED_MAGIC:
        raise FormatError(f"{bed_file} is not a PLINK BED file (bad magic number).")

    if header[2] != BED_SNP_MAJOR:
        raise FormatError(f"{bed_file} is stored in individual-major mode, "
                          f"only SNP-major BED files are supported.")

    expected = BED_HEADER_SIZE + n_snps * bed_bytes_per_snp(n_samples)
    actual = osp.getsize(bed_file)

    if actual != expected:
        raise FormatError(f"The size of {bed_file} ({actual} bytes) does not match the declared "
                          f"dimensions of {n_samples} individuals x {n_snps} variants "
                          f"(expected {expected} bytes).")
