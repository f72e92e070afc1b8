"""Provider Agent - commits artifacts and reveals them once a buyer has paid."""

from .artifact_generator import ArtifactGenerator
from .controller import ProviderController
