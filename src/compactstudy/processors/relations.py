"""Relations specialist: definitions, properties, combining and n-ary relations."""
from __future__ import annotations

from .domain import DomainContentProcessor, ExtractionSlice

RELATIONS_SLICES = (
    ExtractionSlice(
        "definitions",
        "Extract relation definitions and basic concepts: binary and n-ary relations, "
        "Cartesian products A x B = {(a,b) | a in A, b in B}, domain, range and codomain, "
        "relation notation R subset of A x B, aRb, (a,b) in R.",
    ),
    ExtractionSlice(
        "properties",
        "Extract relation properties: reflexive, irreflexive, symmetric, antisymmetric, "
        "asymmetric and transitive, with their quantified definitions.",
    ),
    ExtractionSlice(
        "combining",
        "Extract combining relations: union, intersection, complement, composition "
        "R1 o R2 and inverse relations, with worked examples.",
    ),
    ExtractionSlice(
        "nary",
        "Extract n-ary relations: R subset of A1 x ... x An, ternary relations, projection "
        "and selection on n-ary relations.",
    ),
    ExtractionSlice(
        "sql_operations",
        "Extract SQL-style operations on relations: select, project, join, union, "
        "intersection and difference.",
    ),
    ExtractionSlice(
        "property_checks",
        "Extract complete examples that verify relation properties step by step, "
        "including counterexamples and matrix or graph representations.",
        examples_only=True,
    ),
)


class RelationsContentProcessor(DomainContentProcessor):
    processor_id = "relations-processor"
    name = "Relations content processor"
    domain = "relations"
    keywords = (
        "relation",
        "reflexive",
        "symmetric",
        "antisymmetric",
        "transitive",
        "irreflexive",
        "asymmetric",
        "equivalence relation",
        "partial order",
        "n-ary relation",
        "cartesian product",
    )
    slices = RELATIONS_SLICES


__all__ = ["RELATIONS_SLICES", "RelationsContentProcessor"]
