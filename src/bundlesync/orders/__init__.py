"""Orders and entitlements mirrored from commerce platform events."""
