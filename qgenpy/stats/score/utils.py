import logging
import numpy as np
import pandas as pd
from tqdm import tqdm

from ...exceptions import MissingColumnError
from ...utils.compute_utils import lookup_index

logger = logging.getLogger(__name__)

IDENTIFIER_COLUMNS = ('CHR', 'SNP', 'POS', 'A1', 'A2')
# Per-variant statistics that are never used as weights by default:
STATISTIC_COLUMNS = ('N', 'MAF', 'FREQ', 'SE', 'Z', 'PVAL', 'CHISQ')
STATISTIC_PREFIXES = ('VAR', 'PIP', 'SCALE')


class ScoreProjector(object):
    """
    Compute linear (polygenic) scores for the individuals of a `GenotypeStore`:

        score_i = sum_j x_ij * w_j

    where `x_ij` is the number of copies of `A1` carried by individual `i` at variant `j`
    and `w_j` the weight of the variant. Several weight columns are scored at once.

    The weights are matched to the genotype data by SNP rsID. When the effect allele of the
    weight table is the reference allele `A2` of the genotype data, the variant contributes
    `(2 - x_ij) * w_j`, i.e. its weight applies to the count of `A2`. Missing calls contribute
    nothing. Variants whose alleles do not match are dropped, and variants whose weights are
    all zero are not decoded. Scores are accumulated chromosome by chromosome.

    !!! seealso "See Also"
        * [gscore][qgenpy.stats.score.utils.gscore]

    :ivar genotype_store: A `GenotypeStore` object.
    """

    def __init__(self, genotype_store, verbose=True):
        self.genotype_store = genotype_store
        self.verbose = verbose

    @staticmethod
    def weight_columns(weights):
        """
        :return: The numeric columns of a weight table that are not variant identifiers.
        """
        return [c for c in weights.columns
                if c not in IDENTIFIER_COLUMNS and c not in STATISTIC_COLUMNS
                and not c.startswith(STATISTIC_PREFIXES)
                and pd.api.types.is_numeric_dtype(weights[c])]

    def align_weights(self, genotype_matrix, weights, weight_cols):
        """
        Build the matrix of weights for the variants of a single-chromosome genotype matrix.

        :param genotype_matrix: A `GenotypeMatrix` object.
        :param weights: A weight table with `SNP`, `A1` (and, optionally, `A2`) columns.
        :param weight_cols: The weight columns.

        :return: A tuple of an (m x k) matrix of weights, with zeros for unmatched variants,
        and a boolean mask of the variants whose effect allele is `A2` of the genotype data.
        """

        pos, found = lookup_index(weights['SNP'].values, genotype_matrix.snps)

        beta = np.zeros((genotype_matrix.m, len(weight_cols)))
        flip = np.zeros(genotype_matrix.m, dtype=bool)

        if found.sum() < 1:
            return beta, flip

        w_a1 = weights['A1'].values[pos[found]].astype(str)
        g_a1 = genotype_matrix.a1[found].astype(str)
        g_a2 = genotype_matrix.a2[found].astype(str)

        same = w_a1 == g_a1
        flipped = w_a1 == g_a2

        if 'A2' in weights.columns:
            w_a2 = weights['A2'].values[pos[found]].astype(str)
            same &= w_a2 == g_a2
            flipped &= w_a2 == g_a1

        mismatch = ~(same | flipped)
        if mismatch.sum() > 0:
            logger.warning(f"Dropping {mismatch.sum()} variants on chromosome {genotype_matrix.chromosome} "
                           f"whose alleles do not match the genotype data.")

        beta[found] = weights[weight_cols].values[pos[found]] * (~mismatch)[:, None]
        flip[found] = flipped & ~same

        return beta, flip

    def project(self, weights, weight_cols=None, center=False, chunk_size='auto'):
        """
        Compute the scores.

        :param weights: A pandas DataFrame with `SNP`, `A1` (optionally `A2`) and one or more weight columns.
        :param weight_cols: The weight columns to score (default: every numeric non-identifier column).
        :param center: If True, center the genotypes by their expected dosage (2 x frequency of the scored allele).
        :param chunk_size: The number of variants decoded per chunk.

        :return: A pandas DataFrame with `FID`, `IID` and one score column per weight column.
        :raises MissingColumnError: If the weight table lacks `SNP`, `A1` or any of the weight columns.
        """

        missing = [c for c in ('SNP', 'A1') if c not in weights.columns]
        if len(missing) > 0:
            raise MissingColumnError(missing, context="required to match the weights to the genotype data")

        weight_cols = list(weight_cols or self.weight_columns(weights))

        if len(weight_cols) < 1:
            raise MissingColumnError(['<weight column>'], context="the weight table has no numeric weight columns")

        missing = [c for c in weight_cols if c not in weights.columns]
        if len(missing) > 0:
            raise MissingColumnError(missing, context="requested weight columns")

        weights = weights.copy()
        weights['SNP'] = weights['SNP'].astype(str)

        n_dup = weights['SNP'].duplicated(keep=False).sum()
        if n_dup > 0:
            logger.warning(f"Dropping {n_dup} weight table rows with duplicated SNP rsIDs.")
            weights = weights.drop_duplicates(subset='SNP', keep=False)

        weights = weights.reset_index(drop=True)
        weights[weight_cols] = weights[weight_cols].fillna(0.)

        scores = np.zeros((self.genotype_store.n, len(weight_cols)))
        n_matched = 0

        logger.info("> Computing scores...")

        for c, g in tqdm(self.genotype_store, total=len(self.genotype_store),
                         desc='Scoring', disable=not self.verbose):

            beta, flip = self.align_weights(g, weights, weight_cols)
            n_matched += int(np.any(beta != 0., axis=1).sum())

            scores += g.score(beta, center=center, chunk_size=chunk_size, flip=flip).reshape(scores.shape)

        all_snps = np.concatenate(list(self.genotype_store.snps.values()))
        n_unmatched = len(weights) - lookup_index(all_snps, weights['SNP'].values)[1].sum()
        if n_unmatched > 0:
            logger.warning(f"{n_unmatched} variants of the weight table are absent from the genotype data.")

        logger.debug(f"> Scored {n_matched} variants with non-zero weights.")

        table = self.genotype_store.to_individual_table().reset_index(drop=True)
        for i, col in enumerate(weight_cols):
            table[col] = scores[:, i]

        return table


def gscore(genotype, weights, weight_cols=None, center=False, chunk_size='auto', verbose=True):
    """
    A convenience function to compute linear (polygenic) scores.

    :param genotype: A `GenotypeStore`, a `GenotypeCatalog`, or a path (or wildcard) to PLINK BED files.
    :param weights: A pandas DataFrame (or the path to a whitespace-delimited file) with `SNP`, `A1`
    (optionally `A2`) and one or more weight columns, e.g. the output of `adjust_stat` or of
    `BayesianMarkerSampler.to_table`.
    :param weight_cols: The weight columns to score.
    :param center: If True, center the genotypes by their expected dosage.
    :param chunk_size: The number of variants decoded per chunk.
    :param verbose: Show a progress bar.

    :return: A pandas DataFrame with `FID`, `IID` and one score column per weight column.
    """

    from ...GenotypeStore import GenotypeStore

    if isinstance(genotype, str):
        genotype = GenotypeStore.from_files(genotype, verbose=verbose)
    elif hasattr(genotype, 'genotype_store'):
        genotype = genotype.genotype_store

    if isinstance(weights, str):
        weights = pd.read_csv(weights, sep=r'\s+', dtype={'SNP': str, 'A1': str, 'A2': str})

    return ScoreProjector(genotype, verbose=verbose).project(weights,
                                                             weight_cols=weight_cols,
                                                             center=center,
                                                             chunk_size=chunk_size)
