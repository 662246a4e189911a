"""Pure conductor logic: swarm state reducer, confidence evaluation, phase machine."""
