"""
Sepsis/SIRS Cohort Extraction for ICU Mortality Prediction

This package builds a cohort of adult ICU stays with suspected sepsis or SIRS
from a MIMIC-IV DuckDB database and joins a wide panel of first-day features
onto it, producing one row per stay for downstream mortality modeling.

The package is organized into several components:
- Item-code lookup table (one versioned mapping of item IDs to clinical concepts)
- Event store access (windowed reads of chart, lab, infusion and procedure events)
- Cohort filter (diagnosis stage, first stay, pregnancy, ICU duration bounds)
- Severity scores (SIRS, simplified SOFA, OASIS)
- Feature aggregation (vitals, labs, derived ratios, treatment flags, comorbidities)
- Cohort assembly (outcome flags, left joins, output column order)

Main workflow:
1. Score every candidate stay (SIRS, SOFA) over the first 24 hours
2. Apply the five cohort stages and report survivor counts
3. Aggregate first-day features for the surviving stays
4. Assemble the final table and write it to CSV
"""
