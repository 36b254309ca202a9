"""
Error taxonomy for the reconstruction core

Every failure the pipeline can report is a ReconstructionError subclass.
Collaborator failures share CollaboratorUnavailable as a parent so callers
can treat "something outside the core was unreachable" uniformly.
"""


class ReconstructionError(Exception):
    """Base class for all reconstruction failures"""


class InsufficientData(ReconstructionError):
    """Too few correspondences, views or points to continue"""


class DegenerateGeometry(ReconstructionError):
    """Collinear samples, near-parallel rays or a vanishing baseline"""


class ConvergenceFailure(ReconstructionError):
    """A robust estimator exhausted its budget without a usable model"""


class InvalidInput(ReconstructionError):
    """Malformed image, descriptor or point data"""


class Cancelled(ReconstructionError):
    """The session was cancelled while a stage was pending"""


class StageTimeout(ReconstructionError):
    """A stage exceeded its configured time budget"""


class CollaboratorUnavailable(ReconstructionError):
    """An external collaborator could not be reached or failed"""


class CaptureUnavailable(CollaboratorUnavailable):
    pass


class ExtractionFailed(CollaboratorUnavailable):
    pass


class ReconstructionFailed(CollaboratorUnavailable):
    pass


class RenderUnavailable(CollaboratorUnavailable):
    pass


class InvalidTransition(RuntimeError):
    """Raised when the pipeline state machine is driven out of order"""
