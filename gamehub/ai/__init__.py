"""Per-game adaptive play: tabular action values with an epsilon-greedy policy."""
