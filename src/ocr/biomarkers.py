"""Static biomarker tables: plausible ranges, name aliases and unit spellings.

All three tables are keyed by :class:`BiomarkerKey`.  Adding a biomarker or
an alias is a data change here, never a logic change elsewhere.  Aliases are
stored lowercase and cover the report languages we receive (English, German,
Czech, French, Spanish, Italian, Dutch).
"""

from __future__ import annotations

from types import MappingProxyType
from typing import Mapping

from src.ocr.base import BiomarkerKey, BiomarkerRange

# ---------------------------------------------------------------------------
# Plausible / optimal ranges (canonical units)
# ---------------------------------------------------------------------------

BIOMARKER_RANGES: Mapping[BiomarkerKey, BiomarkerRange] = MappingProxyType(
    {
        BiomarkerKey.ALBUMIN: BiomarkerRange(2.0, 6.0, 3.5, 5.0, "g/dL", "Albumin"),
        BiomarkerKey.CREATININE: BiomarkerRange(0.3, 3.0, 0.6, 1.2, "mg/dL", "Creatinine"),
        BiomarkerKey.GLUCOSE: BiomarkerRange(40, 300, 70, 100, "mg/dL", "Glucose"),
        BiomarkerKey.CRP: BiomarkerRange(0, 50, 0, 3.0, "mg/L", "C-Reactive Protein"),
        BiomarkerKey.LYMPHOCYTE_PERCENT: BiomarkerRange(5, 60, 20, 40, "%", "Lymphocyte %"),
        BiomarkerKey.MCV: BiomarkerRange(60, 120, 80, 100, "fL", "Mean Corpuscular Volume"),
        BiomarkerKey.RDW: BiomarkerRange(10, 25, 11.5, 14.5, "%", "Red Cell Distribution Width"),
        BiomarkerKey.ALP: BiomarkerRange(20, 300, 44, 147, "U/L", "Alkaline Phosphatase"),
        BiomarkerKey.WBC: BiomarkerRange(2, 20, 4.5, 11.0, "K/uL", "White Blood Cell Count"),
    }
)


# ---------------------------------------------------------------------------
# Name aliases
# Includes abbreviations, full clinical names, translations and common
# OCR misreads.
# ---------------------------------------------------------------------------

BIOMARKER_ALIASES: Mapping[BiomarkerKey, tuple[str, ...]] = MappingProxyType(
    {
        BiomarkerKey.ALBUMIN: (
            "albumin", "alb", "serum albumin", "albumina", "albumine",
            "alb.", "s-albumin", "plasma albumin", "albúmina", "albumen",
            "ser albumin", "total albumin", "albumin serum",
            "albumine sérique", "albumine serique",  # French
            "s_albumin", "albumin, serum",
        ),
        BiomarkerKey.CREATININE: (
            "creatinine", "creat", "crea", "creatinin", "kreatinin",
            "serum creatinine", "s-creatinine", "creat.", "créatinine",
            "kreatinine", "creatinina", "plasma creatinine", "creatinine serum",
            "s_kreatinin", "creatinine, serum",
        ),
        BiomarkerKey.GLUCOSE: (
            "glucose", "gluc", "glu", "fasting glucose", "blood glucose",
            "glucosa", "glukose", "fbs", "fbg", "blood sugar",
            "fasting blood sugar", "glycemia", "glycémie", "blutzucker",
            "plasma glucose", "serum glucose", "glucose fasting",
            "fasting plasma glucose", "fpg", "random glucose",
            "glukóza", "glukoza", "s_glukóza",  # Czech
            "glucosio", "glicemia",  # Italian
        ),
        BiomarkerKey.CRP: (
            "crp", "c-reactive protein", "c reactive protein", "hs-crp",
            "hscrp", "high sensitivity crp", "proteina c reactiva", "pcr",
            "c-reaktives protein", "protéine c réactive", "high-sensitivity crp",
            "hs crp", "c-reactive", "creactive protein", "sensitive crp",
            "cardiac crp", "crp-hs", "ultra-sensitive crp",
            "c-reaktivní protein", "s_crp",  # Czech
            "proteina c reattiva",  # Italian
        ),
        BiomarkerKey.LYMPHOCYTE_PERCENT: (
            "lymphocyte", "lymph", "lymphocytes", "lymph %", "lymph%",
            "lym", "lym%", "lymphocyte %", "linfocitos", "lymphozyten",
            "lymphocytes %", "lymph percent", "ly%", "ly %", "lymph pct",
            "lymphocyte percent", "% lymphocytes", "lymphocyte percentage",
            "lymfocyty", "b_lymfocyty", "lymfocyt",  # Czech
            "lymphozyten, relativ", "lymphozyten relativ",  # German
            "linfociti", "lymfocyten",  # Italian, Dutch
        ),
        BiomarkerKey.MCV: (
            "mcv", "mean corpuscular volume", "mean cell volume",
            "vcm", "mch volume", "mean corp vol", "mean corp. volume",
            "corpuscular volume", "m.c.v", "m.c.v.", "erythrocyte mcv",
            "volume globulaire moyen", "vgm",  # French
            "střední objem ery", "b_mcv",  # Czech
        ),
        BiomarkerKey.RDW: (
            "rdw", "red cell distribution width", "rdw-cv", "rdw-sd",
            "red blood cell distribution width", "anisocytosis", "rdw cv",
            "rdw sd", "rbc distribution width", "r.d.w", "r.d.w.",
            "red cell dist width", "erythrocyte distribution width",
            "rdw-distr", "distr. šířka rbc", "šířka rbc",  # Czech
            "evb", "evb (rdw)", "erythrozytenverteilungsbreite",  # German
            "indice de distribution des globules rouges", "idr",  # French
        ),
        BiomarkerKey.ALP: (
            "alp", "alkaline phosphatase", "alk phos", "alkp",
            "fosfatasa alcalina", "ap", "alk. phos.", "alk phosphatase",
            "alkalische phosphatase", "phosphatase alcaline", "alk.phos",
            "alkaline phos", "total alp", "serum alp", "palc",
            "alkalická fosfatáza", "s_alp",  # Czech
            "fosfatasi alcalina", "alkalische fosfatase",  # Italian, Dutch
        ),
        BiomarkerKey.WBC: (
            "wbc", "white blood cell", "white blood cells", "leucocytes",
            "leukocytes", "wcc", "leucocitos", "total wbc", "white cell count",
            "white blood count", "w.b.c", "w.b.c.", "leukozyten",
            "leucocyte count", "leukocyte count", "total white count", "twbc",
            "leukocyty", "b_leukocyty",  # Czech
            "globules blancs", "gb",  # French
            "leucociti", "leukocyten",  # Italian, Dutch
        ),
    }
)


# ---------------------------------------------------------------------------
# Unit spellings recognised next to each biomarker (lowercase).
# Order matters: the first spelling found in the text wins, so longer or
# more specific spellings come before their substrings.
# ---------------------------------------------------------------------------

BIOMARKER_UNITS: Mapping[BiomarkerKey, tuple[str, ...]] = MappingProxyType(
    {
        BiomarkerKey.ALBUMIN: ("g/dl", "g/l", "gm/dl", "g%"),
        BiomarkerKey.CREATININE: ("mg/dl", "mg/l", "umol/l", "μmol/l", "µmol/l"),
        BiomarkerKey.GLUCOSE: ("mg/dl", "mmol/l", "mg/l", "mg%"),
        BiomarkerKey.CRP: ("mg/l", "mg/dl", "nmol/l", "ug/ml", "μg/ml", "µg/ml"),
        BiomarkerKey.LYMPHOCYTE_PERCENT: ("%", "percent", "pct"),
        BiomarkerKey.MCV: ("fl", "femtoliters", "um3", "μm3", "µm3"),
        # "ratio" is rewritten to "%" by the RDW ratio rule
        BiomarkerKey.RDW: ("%", "percent", "pct", "cv", "ratio"),
        BiomarkerKey.ALP: ("u/l", "iu/l", "u/i", "units/l", "ukat/l", "µkat/l", "μkat/l"),
        BiomarkerKey.WBC: (
            "k/ul", "k/μl", "k/µl", "10^3/ul", "10^9/l", "x10^3/ul", "x10^9/l",
            "thou/ul", "k/mcl", "giga/l", "g/l",
        ),
    }
)


def get_display_name(biomarker: BiomarkerKey) -> str:
    """Return the human-friendly name of a biomarker."""
    return BIOMARKER_RANGES[biomarker].name
