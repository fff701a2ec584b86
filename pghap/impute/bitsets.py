"""Word-packed allele-presence bitsets and block distance arithmetic.

Site ``i`` of a packed row lives in word ``i // 64`` at bit ``i % 64`` (least significant bit first). A genotype is stored as two rows of words: the major-allele presence and the minor-allele presence. Missing calls set neither bit; heterozygous calls set both.
"""

from __future__ import annotations

from typing import NamedTuple, Tuple

import numpy as np

WORD_BITS = 64

_SITES, _SAME, _DIFF, _HET = range(4)


def n_words(n_sites: int) -> int:
    """Number of 64-bit words needed to hold ``n_sites`` bits."""
    return (int(n_sites) + WORD_BITS - 1) // WORD_BITS


def pack_bits(mask: np.ndarray) -> np.ndarray:
    """Pack a boolean array along its last axis into little-endian uint64 words.

    Args:
        mask (np.ndarray): Boolean array of shape ``(..., n_sites)``.

    Returns:
        np.ndarray: ``uint64`` array of shape ``(..., n_words(n_sites))``.
    """
    mask = np.asarray(mask, dtype=bool)
    n_sites = mask.shape[-1]
    pad = n_words(n_sites) * WORD_BITS - n_sites
    if pad:
        filler = np.zeros(mask.shape[:-1] + (pad,), dtype=bool)
        mask = np.concatenate([mask, filler], axis=-1)
    packed = np.ascontiguousarray(np.packbits(mask, axis=-1, bitorder="little"))
    return packed.view("<u8").astype(np.uint64)


def unpack_bits(words: np.ndarray, n_sites: int) -> np.ndarray:
    """Inverse of :func:`pack_bits`, truncated to ``n_sites`` bits."""
    words = np.ascontiguousarray(words, dtype="<u8")
    bits = np.unpackbits(words.view(np.uint8), axis=-1, bitorder="little")
    return bits[..., :n_sites].astype(bool)


def popcount(words: np.ndarray) -> np.ndarray:
    """Per-word count of set bits, as int64."""
    return np.bitwise_count(np.asarray(words, dtype=np.uint64)).astype(np.int64)


def encode_presence(codes: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    """Encode 0/1/2 genotype codes into (major, minor) presence words.

    Args:
        codes (np.ndarray): Codes of shape ``(..., n_sites)``; negative values are missing.

    Returns:
        Tuple[np.ndarray, np.ndarray]: Major and minor presence words.
    """
    codes = np.asarray(codes)
    major = (codes == 0) | (codes == 1)
    minor = (codes == 1) | (codes == 2)
    return pack_bits(major), pack_bits(minor)


def decode_presence(major: np.ndarray, minor: np.ndarray, n_sites: int) -> np.ndarray:
    """Decode presence words back into 0/1/2 codes with -1 for missing."""
    mj = unpack_bits(major, n_sites)
    mn = unpack_bits(minor, n_sites)
    codes = np.full(mj.shape, -1, dtype=np.int8)
    codes[mj & ~mn] = 0
    codes[mj & mn] = 1
    codes[~mj & mn] = 2
    return codes


def shift_words(words: np.ndarray, offset: int, n_bits: int) -> np.ndarray:
    """Extract bits ``[offset, offset + n_bits)`` as a new word array starting at bit 0.

    Bits beyond the end of ``words`` read as zero and unused high bits of the last output word are cleared.

    Args:
        words (np.ndarray): ``uint64`` words of shape ``(..., n)``.
        offset (int): First bit to extract.
        n_bits (int): Number of bits to extract.

    Returns:
        np.ndarray: ``uint64`` words of shape ``(..., n_words(n_bits))``.
    """
    if offset < 0 or n_bits < 0:
        raise ValueError("offset and n_bits must be non-negative.")

    words = np.asarray(words, dtype=np.uint64)
    first, shift = divmod(int(offset), WORD_BITS)
    n_out = n_words(n_bits)

    src = words[..., first : first + n_out + 1]
    missing = n_out + 1 - src.shape[-1]
    if missing > 0:
        filler = np.zeros(src.shape[:-1] + (missing,), dtype=np.uint64)
        src = np.concatenate([src, filler], axis=-1)

    lo = src[..., :n_out]
    if shift == 0:
        out = lo.copy()
    else:
        hi = src[..., 1 : n_out + 1]
        out = (lo >> np.uint64(shift)) | (hi << np.uint64(WORD_BITS - shift))

    tail = n_bits % WORD_BITS
    if tail and n_out:
        out[..., -1] &= np.uint64((1 << tail) - 1)
    return out


def arrange_target_bits(
    target_major: np.ndarray,
    target_minor: np.ndarray,
    offset: int,
    n_sites: int,
    good: np.ndarray,
    swap: np.ndarray,
    *,
    swap_major_minor: bool = True,
) -> Tuple[np.ndarray, np.ndarray]:
    """Realign a target's presence words onto a donor panel's site range.

    The target words are shifted so bit 0 is the panel's first site, masked to sites where the panel and target agree on allele polarity, and, at sites where the panel's major and minor alleles are swapped, the target's major bit is moved to the minor row and vice versa.

    Args:
        target_major (np.ndarray): Target major words over the full target matrix.
        target_minor (np.ndarray): Target minor words over the full target matrix.
        offset (int): Target site index of the panel's first site.
        n_sites (int): Number of panel sites.
        good (np.ndarray): Panel words of polarity-consistent sites.
        swap (np.ndarray): Panel words of swapped-polarity sites.
        swap_major_minor (bool): Apply the swap; otherwise swapped sites drop out.

    Returns:
        Tuple[np.ndarray, np.ndarray]: Major and minor words in panel coordinates.
    """
    mj = shift_words(target_major, offset, n_sites)
    mn = shift_words(target_minor, offset, n_sites)
    out_mj = mj & good
    out_mn = mn & good
    if swap_major_minor:
        out_mj |= mn & swap
        out_mn |= mj & swap
    return out_mj, out_mn


class BlockDistance(NamedTuple):
    """Inbred comparison counts over a window."""

    sites: int
    same: int
    diff: int
    het: int

    @property
    def mendelian_errors(self) -> float:
        return self.sites - self.same + 0.5 * self.het

    @property
    def error_rate(self) -> float:
        if self.sites <= 0:
            return 1.0
        return 1.0 - (self.same - 0.5 * self.het) / self.sites


class DistanceTable:
    """Cached ``donor x 4 x block`` inbred comparison counts for one target.

    Rows of the middle axis are ``sites, same, diff, het``. One table is built per target sample and donor panel, then summed over many windows.

    Attributes:
        counts (np.ndarray): Integer array of shape ``(n_donors, 4, n_blocks)``.
    """

    def __init__(self, counts: np.ndarray) -> None:
        counts = np.asarray(counts)
        if counts.ndim != 3 or counts.shape[1] != 4:
            raise ValueError(
                f"counts must have shape (n_donors, 4, n_blocks), got {counts.shape}"
            )
        self.counts = counts

    @classmethod
    def build(
        cls,
        target_major: np.ndarray,
        target_minor: np.ndarray,
        donor_major: np.ndarray,
        donor_minor: np.ndarray,
    ) -> "DistanceTable":
        """Compute per-block counts for every donor in one vectorised pass.

        Args:
            target_major (np.ndarray): Target major words, shape ``(n_blocks,)``.
            target_minor (np.ndarray): Target minor words, shape ``(n_blocks,)``.
            donor_major (np.ndarray): Donor major words, shape ``(n_donors, n_blocks)``.
            donor_minor (np.ndarray): Donor minor words, shape ``(n_donors, n_blocks)``.

        Returns:
            DistanceTable: The populated table.
        """
        same = (target_major & donor_major) | (target_minor & donor_minor)
        diff = (target_major & donor_minor) | (target_minor & donor_major)
        het = same & diff

        n_same = popcount(same)
        n_diff = popcount(diff)
        n_het = popcount(het)
        sites = n_same + n_diff - n_het
        return cls(np.stack([sites, n_same, n_diff, n_het], axis=1).astype(np.int32))

    @property
    def n_donors(self) -> int:
        return self.counts.shape[0]

    @property
    def n_blocks(self) -> int:
        return self.counts.shape[2]

    def window_totals(self, start_block: int, end_block: int) -> np.ndarray:
        """Counts summed over blocks ``start_block..end_block`` (inclusive), shape ``(n_donors, 4)``."""
        return self.counts[:, :, start_block : end_block + 1].sum(axis=2, dtype=np.int64)

    def inbred_distance(
        self, donor: int, start_block: int, end_block: int
    ) -> BlockDistance:
        """Counts for one donor over an inclusive block range."""
        sites, same, diff, het = (
            int(v) for v in self.counts[donor, :, start_block : end_block + 1].sum(axis=1)
        )
        return BlockDistance(sites, same, diff, het)


def hybrid_mendel_error(
    target_major: np.ndarray,
    target_minor: np.ndarray,
    d1_major: np.ndarray,
    d1_minor: np.ndarray,
    d2_major: np.ndarray,
    d2_minor: np.ndarray,
) -> Tuple[int, int]:
    """Count Mendelian errors of a target against a donor pair.

    A site is tested when the target and both donors are called. An error is a tested site where the target carries the major (or minor) allele and neither donor does.

    Returns:
        Tuple[int, int]: ``(errors, tested_sites)``.
    """
    errors, tested = hybrid_mendel_errors(
        target_major,
        target_minor,
        np.asarray(d1_major)[None],
        np.asarray(d1_minor)[None],
        np.asarray(d2_major)[None],
        np.asarray(d2_minor)[None],
    )
    return int(errors[0]), int(tested[0])


def hybrid_mendel_errors(
    target_major: np.ndarray,
    target_minor: np.ndarray,
    d1_major: np.ndarray,
    d1_minor: np.ndarray,
    d2_major: np.ndarray,
    d2_minor: np.ndarray,
) -> Tuple[np.ndarray, np.ndarray]:
    """Vectorised :func:`hybrid_mendel_error` over many donor pairs.

    Donor arrays have shape ``(n_pairs, n_words)``; the target words broadcast.

    Returns:
        Tuple[np.ndarray, np.ndarray]: ``errors`` and ``tested`` arrays of length ``n_pairs``.
    """
    site_mask = (target_major | target_minor) & (d1_major | d1_minor) & (d2_major | d2_minor)
    mj_err = site_mask & target_major & ~d1_major & ~d2_major
    mn_err = site_mask & target_minor & ~d1_minor & ~d2_minor
    errors = popcount(mj_err).sum(axis=-1) + popcount(mn_err).sum(axis=-1)
    tested = popcount(site_mask).sum(axis=-1)
    return errors, tested
