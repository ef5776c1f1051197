"""TimeBank session lifecycle and escrow engine."""
