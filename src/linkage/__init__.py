"""
Linkage - Entity Group Construction with Manual Overrides

Links records describing the same real-world person, household or
organisation across two independent data sources:
- Builds entity groups phase by phase from natural similarity matches
- Applies operator-maintained Force-Match / Force-Exclude override rules
- Audits finished groups against every rule and explains failures
"""

__version__ = "0.1.0"
