"""KMS core: policy evaluation, signing sessions and providers."""
