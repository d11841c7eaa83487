from gtdtxt_formula.formula.catalog import GTDTXT_FORMULA, load_formula, parse_formula, validate_formula

__all__ = [
    "GTDTXT_FORMULA",
    "load_formula",
    "parse_formula",
    "validate_formula",
]
