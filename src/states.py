from aiogram.fsm.state import State, StatesGroup

from wizard import WorkflowStep


class EditAnythingStates(StatesGroup):
    """FSM states mirroring the wizard steps, one per WorkflowStep."""
    choose_image = State()    # Step 1: awaiting source image
    set_mask_point = State()  # Step 2: awaiting point coordinates
    generate_mask = State()   # Step 3: point set, masks can be requested
    choose_mask = State()     # Step 4: awaiting mask choice
    define_prompt = State()   # Step 5: awaiting edit prompt
    generate = State()        # Done: results delivered


def state_for_step(step: WorkflowStep) -> State:
    return getattr(EditAnythingStates, step.value)
