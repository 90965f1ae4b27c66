"""Named data shapes shared across treesync."""
