"""HTTP surface of the mining slots engine."""
