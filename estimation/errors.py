class ViconGraphError(RuntimeError):
    """Base class for unrecoverable errors of the vicon graph calibration."""


class EmptyTimestampsError(ViconGraphError):
    """No camera timestamps left to hang navigation states on."""


class PropagatorContractError(ViconGraphError):
    """The propagator returned a measurement that breaks its contract."""
