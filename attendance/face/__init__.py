"""Face identity building blocks (descriptor/enrollment/matcher/extractor).

The matcher and the enrollment records only ever see canonical descriptors;
conversion from stored or model-specific formats happens in `descriptor.as_descriptor`.
"""
