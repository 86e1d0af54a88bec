# clarifier_model.py File

import numpy as np

from asm2d_state import particulate_idx


def ideal_clarifier(feed_concs, Q_feed, Q_underflow, solids_capture):
    """
    Point settler without volume: solubles pass unchanged to both outlets,
    a fixed fraction of the particulate flux is captured in the underflow.

    Args:
        feed_concs (array): (18,) or (n, 18) concentrations of the clarifier feed (g/m^3).
        Q_feed (float): Clarifier feed flow (m^3/d) = Q_e + Q_u.
        Q_underflow (float): Return sludge flow (m^3/d).
        solids_capture (float): Fraction of particulate mass flux sent to the underflow.

    Returns:
        tuple: (effluent concs, underflow concs), same shape as feed_concs.
    """
    X_f = np.asarray(feed_concs, dtype=float)
    Q_e = Q_feed - Q_underflow
    if Q_e <= 0.0:
        raise ValueError("clarifier feed must exceed the underflow")

    effluent = X_f.copy()
    underflow = X_f.copy()
    if Q_underflow <= 0.0:
        # nothing is returned: the whole stream leaves with the effluent
        return effluent, underflow

    particulates = X_f[..., particulate_idx]
    effluent[..., particulate_idx] = (1.0 - solids_capture) * Q_feed * particulates / Q_e
    underflow[..., particulate_idx] = solids_capture * Q_feed * particulates / Q_underflow
    return effluent, underflow

