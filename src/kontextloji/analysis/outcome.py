"""
outcome.py - Association of image-level features with outcomes

Features are image-level matrices such as cell-type proportions or
ColocalizationResult.to_wide(); outcomes are vectors indexed by image id.
Each feature is tested on its own and p values are corrected with
Benjamini-Hochberg.
"""

from __future__ import annotations

import logging
import warnings
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from kontextloji.data.core import CellTable

import numpy as np
import pandas as pd
from lifelines import CoxPHFitter
from lifelines.exceptions import ConvergenceError
from scipy import stats
from statsmodels.stats.multitest import multipletests

logger = logging.getLogger(__name__)


def _bh(pvalues: pd.Series) -> pd.Series:
    """BH-adjusted p values; missing p values stay missing."""
    fdr = pd.Series(np.nan, index=pvalues.index)
    ok = pvalues.notna()
    if ok.any():
        fdr[ok] = multipletests(pvalues[ok], method="fdr_bh")[1]
    return fdr


def cell_type_proportions(table: CellTable, normalize: bool = True) -> pd.DataFrame:
    """
    Image × cell type matrix of proportions (or counts).

    Parameters
    ----------
    table : CellTable
    normalize : bool
        Divide each row by the number of cells in the image.
    """
    counts = table.count_cell_types()
    if not normalize:
        return counts
    totals = counts.sum(axis=1).replace(0, np.nan)
    return counts.div(totals, axis=0)


def group_test(
    features: pd.DataFrame,
    groups: pd.Series,
    test: str = "wilcoxon",
    min_per_group: int = 2,
) -> pd.DataFrame:
    """
    Two-group comparison of every feature.

    Parameters
    ----------
    features : pd.DataFrame
        Images × features.
    groups : pd.Series
        Group label per image (exactly two distinct values), indexed by
        image id.
    test : str
        'wilcoxon' (Mann-Whitney U) or 'ttest' (Welch's t-test).
    min_per_group : int
        Features with fewer non-missing images in either group are
        reported with a missing p value.

    Returns
    -------
    pd.DataFrame
        Indexed by feature: mean per group, difference, statistic,
        pvalue and fdr, sorted by pvalue.
    """
    groups = groups.dropna()
    levels = sorted(groups.unique(), key=str)
    if len(levels) != 2:
        raise ValueError(f"group_test needs exactly 2 groups, got {len(levels)}: {levels}")
    if test not in ("wilcoxon", "ttest"):
        raise ValueError(f"Unknown test: {test}. Use 'wilcoxon' or 'ttest'.")

    shared = features.index.intersection(groups.index)
    features, groups = features.loc[shared], groups.loc[shared]
    g1, g2 = levels

    rows = []
    for feature in features.columns:
        values = features[feature]
        a = values[groups == g1].dropna().to_numpy(dtype=float)
        b = values[groups == g2].dropna().to_numpy(dtype=float)
        statistic = pvalue = np.nan
        if len(a) >= min_per_group and len(b) >= min_per_group:
            if test == "wilcoxon":
                statistic, pvalue = stats.mannwhitneyu(a, b, alternative="two-sided")
            elif np.ptp(np.concatenate([a, b])) > 0:
                statistic, pvalue = stats.ttest_ind(a, b, equal_var=False)
        rows.append({
            "feature": feature,
            f"mean_{g1}": a.mean() if len(a) else np.nan,
            f"mean_{g2}": b.mean() if len(b) else np.nan,
            "difference": (b.mean() - a.mean()) if len(a) and len(b) else np.nan,
            "statistic": float(statistic),
            "pvalue": float(pvalue),
            "n": len(a) + len(b),
        })

    result = pd.DataFrame(rows).set_index("feature")
    result["fdr"] = _bh(result["pvalue"])
    result = result.sort_values("pvalue", na_position="last")

    n_sig = int((result["fdr"] < 0.05).sum())
    print(f"  ✓ Group test ({test}, {g1} vs {g2}): {len(result)} features, {n_sig} with FDR < 0.05")
    return result


def survival_association(
    features: pd.DataFrame,
    time: pd.Series,
    event: pd.Series,
    penalizer: float = 0.0,
    standardize: bool = True,
    min_samples: int = 5,
) -> pd.DataFrame:
    """
    Univariate Cox proportional hazards model for every feature.

    Parameters
    ----------
    features : pd.DataFrame
        Images × features.
    time : pd.Series
        Follow-up time per image.
    event : pd.Series
        1 = event observed, 0 = censored.
    penalizer : float
        lifelines ridge penalizer.
    standardize : bool
        z-score each feature so hazard ratios are per standard deviation.
    min_samples : int
        Features with fewer complete images are skipped.

    Returns
    -------
    pd.DataFrame
        Indexed by feature: coef, hazard_ratio, se, z, pvalue, n and
        fdr, sorted by pvalue.
    """
    outcome = pd.DataFrame({"time": time, "event": event}).dropna()
    shared = features.index.intersection(outcome.index)
    features, outcome = features.loc[shared], outcome.loc[shared]

    rows = []
    for feature in features.columns:
        df = pd.concat([features[feature].rename("x"), outcome], axis=1).dropna()
        row = {"feature": feature, "coef": np.nan, "hazard_ratio": np.nan,
               "se": np.nan, "z": np.nan, "pvalue": np.nan, "n": len(df)}

        if len(df) < min_samples or df["x"].std() == 0 or df["event"].sum() == 0:
            rows.append(row)
            continue
        if standardize:
            df["x"] = (df["x"] - df["x"].mean()) / df["x"].std()

        cph = CoxPHFitter(penalizer=penalizer)
        try:
            cph.fit(df, duration_col="time", event_col="event")
        except ConvergenceError as err:
            warnings.warn(f"Cox model for '{feature}' did not converge: {err}", stacklevel=2)
            rows.append(row)
            continue

        summary = cph.summary.loc["x"]
        row.update({
            "coef": float(summary["coef"]),
            "hazard_ratio": float(summary["exp(coef)"]),
            "se": float(summary["se(coef)"]),
            "z": float(summary["z"]),
            "pvalue": float(summary["p"]),
        })
        rows.append(row)

    result = pd.DataFrame(rows).set_index("feature")
    result["fdr"] = _bh(result["pvalue"])
    result = result.sort_values("pvalue", na_position="last")

    n_skipped = int(result["pvalue"].isna().sum())
    if n_skipped:
        logger.info("Survival association: %d features without a fit", n_skipped)
    n_sig = int((result["fdr"] < 0.05).sum())
    print(f"  ✓ Cox survival: {len(result)} features, {n_sig} with FDR < 0.05")
    return result
