"""ruleflow - validate, simulate and convert rule flow graphs."""
