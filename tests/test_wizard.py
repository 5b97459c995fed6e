import pytest
import sys
from dataclasses import replace
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

from wizard import (
    EditFailed,
    EditReceived,
    EditRequested,
    FailureReason,
    ImageSupplied,
    MaskPoint,
    MaskSelected,
    MasksFailed,
    MasksReceived,
    MasksRequested,
    PointClicked,
    PromptChanged,
    Reset,
    SourceImage,
    TransitionRejected,
    WizardSession,
    WorkflowStep,
    extension_for,
    extract_mask_id,
    has_prompt,
    transition,
)


@pytest.fixture
def cat_image():
    return SourceImage(
        data='data:image/png;base64,iVBORw0KGgo=',
        filename='cat.png',
        width=320,
        height=240,
        byte_size=8,
    )


@pytest.fixture
def masks():
    return ('https://cdn/u1_with_mask_7.png', 'https://cdn/u2_with_mask_8.png')


@pytest.fixture
def awaiting_prompt(cat_image, masks):
    return WizardSession(
        step=WorkflowStep.DEFINE_PROMPT,
        image=cat_image,
        point=MaskPoint(100, 50),
        masks=masks,
        image_id='abc',
        selected_mask=masks[0],
    )


def run(session, *events):
    for event in events:
        session = transition(session, event)
    return session


class TestHappyPath:
    def test_full_walk_follows_the_step_table(self, cat_image, masks):
        session = WizardSession()
        assert session.step == WorkflowStep.CHOOSE_IMAGE

        session = transition(session, ImageSupplied(cat_image))
        assert session.step == WorkflowStep.SET_MASK_POINT
        assert session.image == cat_image

        session = transition(session, PointClicked(MaskPoint(100, 50)))
        assert session.step == WorkflowStep.GENERATE_MASK
        assert session.point == MaskPoint(100, 50)

        session = transition(session, MasksRequested())
        assert session.step == WorkflowStep.GENERATE_MASK
        assert session.loading is True

        session = transition(session, MasksReceived(session.generation, masks, 'abc'))
        assert session.step == WorkflowStep.CHOOSE_MASK
        assert session.masks == masks
        assert session.image_id == 'abc'
        assert session.loading is False

        session = transition(session, MaskSelected(masks[0]))
        assert session.step == WorkflowStep.DEFINE_PROMPT
        assert session.selected_mask == masks[0]

        session = transition(session, PromptChanged('a hat'))
        assert session.step == WorkflowStep.DEFINE_PROMPT
        assert session.can_generate is True

        session = transition(session, EditRequested())
        assert session.loading is True

        session = transition(session, EditReceived(session.generation, ('r1', 'r2')))
        assert session.step == WorkflowStep.GENERATE
        assert session.results == ('r1', 'r2')
        assert session.loading is False

    def test_transition_does_not_modify_input(self, cat_image):
        session = WizardSession()
        transition(session, ImageSupplied(cat_image))
        assert session == WizardSession()


class TestGuards:
    def test_point_before_image_is_rejected(self):
        with pytest.raises(TransitionRejected) as exc_info:
            transition(WizardSession(), PointClicked(MaskPoint(1, 1)))
        assert exc_info.value.reason == FailureReason.PRECONDITION

    def test_point_outside_image_is_rejected(self, cat_image):
        session = transition(WizardSession(), ImageSupplied(cat_image))
        with pytest.raises(TransitionRejected) as exc_info:
            transition(session, PointClicked(MaskPoint(320, 10)))
        assert exc_info.value.reason == FailureReason.INVALID_POINT

    def test_cannot_skip_to_masks_without_point(self, cat_image):
        session = transition(WizardSession(), ImageSupplied(cat_image))
        with pytest.raises(TransitionRejected):
            transition(session, MasksRequested())

    def test_second_mask_request_while_loading_is_rejected(self, cat_image):
        session = run(
            WizardSession(),
            ImageSupplied(cat_image),
            PointClicked(MaskPoint(100, 50)),
            MasksRequested(),
        )
        with pytest.raises(TransitionRejected) as exc_info:
            transition(session, MasksRequested())
        assert exc_info.value.reason == FailureReason.LOADING

    def test_unknown_mask_is_rejected(self, cat_image, masks):
        session = WizardSession(
            step=WorkflowStep.CHOOSE_MASK, image=cat_image, masks=masks, image_id='abc'
        )
        with pytest.raises(TransitionRejected) as exc_info:
            transition(session, MaskSelected('https://cdn/other_with_mask_1.png'))
        assert exc_info.value.reason == FailureReason.UNKNOWN_MASK

    def test_whitespace_prompt_blocks_generate(self, awaiting_prompt):
        session = transition(awaiting_prompt, PromptChanged('   '))
        assert session.has_prompt is False
        assert session.can_generate is False
        with pytest.raises(TransitionRejected) as exc_info:
            transition(session, EditRequested())
        assert exc_info.value.reason == FailureReason.EMPTY_PROMPT

    def test_mask_without_id_blocks_generate(self, awaiting_prompt):
        session = replace(
            awaiting_prompt,
            masks=('https://cdn/plain.png',),
            selected_mask='https://cdn/plain.png',
            prompt='a hat',
        )
        with pytest.raises(TransitionRejected) as exc_info:
            transition(session, EditRequested())
        assert exc_info.value.reason == FailureReason.MALFORMED_MASK_ID

    def test_prompt_cannot_change_while_loading(self, awaiting_prompt):
        session = run(awaiting_prompt, PromptChanged('a hat'), EditRequested())
        with pytest.raises(TransitionRejected) as exc_info:
            transition(session, PromptChanged('a cap'))
        assert exc_info.value.reason == FailureReason.LOADING

    def test_no_back_transition_to_earlier_step(self, awaiting_prompt, cat_image):
        with pytest.raises(TransitionRejected):
            transition(awaiting_prompt, ImageSupplied(cat_image))
        with pytest.raises(TransitionRejected):
            transition(awaiting_prompt, PointClicked(MaskPoint(1, 1)))


class TestFailures:
    def test_mask_failure_stays_on_generate_mask(self, cat_image):
        session = run(
            WizardSession(),
            ImageSupplied(cat_image),
            PointClicked(MaskPoint(100, 50)),
            MasksRequested(),
        )
        session = transition(
            session,
            MasksFailed(session.generation, FailureReason.HTTP_STATUS, 'Request failed with status 500'),
        )
        assert session.step == WorkflowStep.GENERATE_MASK
        assert session.masks == ()
        assert session.loading is False
        assert session.error.reason == FailureReason.HTTP_STATUS
        # the user can simply try again
        assert session.can_generate_masks is True

    def test_edit_failure_stays_on_define_prompt(self, awaiting_prompt):
        session = run(awaiting_prompt, PromptChanged('a hat'), EditRequested())
        session = transition(
            session, EditFailed(session.generation, FailureReason.TRANSPORT, 'boom')
        )
        assert session.step == WorkflowStep.DEFINE_PROMPT
        assert session.results == ()
        assert session.loading is False
        assert session.error.detail == 'boom'

    def test_response_from_previous_generation_is_stale(self, cat_image, masks):
        session = run(
            WizardSession(),
            ImageSupplied(cat_image),
            PointClicked(MaskPoint(100, 50)),
            MasksRequested(),
        )
        old_generation = session.generation
        session = transition(session, Reset())
        with pytest.raises(TransitionRejected) as exc_info:
            transition(session, MasksReceived(old_generation, masks, 'abc'))
        assert exc_info.value.reason == FailureReason.STALE


class TestReset:
    @pytest.mark.parametrize('step', list(WorkflowStep))
    def test_reset_clears_everything(self, step, cat_image, masks):
        session = WizardSession(
            step=step,
            image=cat_image,
            point=MaskPoint(1, 2),
            masks=masks,
            image_id='abc',
            selected_mask=masks[0],
            prompt='a hat',
            results=('r1',),
            loading=True,
            generation=3,
        )
        session = transition(session, Reset())

        assert session.step == WorkflowStep.CHOOSE_IMAGE
        assert session.image is None
        assert session.point is None
        assert session.masks == ()
        assert session.image_id is None
        assert session.selected_mask is None
        assert session.prompt == ''
        assert session.results == ()
        assert session.loading is False
        assert session.error is None
        assert session.generation == 4


class TestHelpers:
    def test_extract_mask_id(self):
        assert extract_mask_id('https://cdn/abc_with_mask_42.png') == '42'
        assert extract_mask_id('u1_with_mask_7') == '7'

    def test_extract_mask_id_without_pattern(self):
        assert extract_mask_id('https://cdn/mask.png') is None
        assert extract_mask_id('with_mask_') is None
        assert extract_mask_id(None) is None

    def test_has_prompt(self):
        assert has_prompt('a hat') is True
        assert has_prompt('   ') is False
        assert has_prompt('') is False
        assert has_prompt(None) is False

    def test_extension_for(self):
        assert extension_for('cat.png') == '.png'
        assert extension_for('archive.tar.jpeg') == '.jpeg'


class TestSerialization:
    def test_session_survives_dict_round_trip(self, awaiting_prompt):
        session = transition(
            run(awaiting_prompt, PromptChanged('a hat'), EditRequested()),
            EditFailed(0, FailureReason.HTTP_STATUS, 'Request failed with status 502'),
        )
        restored = WizardSession.from_dict(session.to_dict())
        assert restored == session

    def test_empty_payload_is_fresh_session(self):
        assert WizardSession.from_dict(None) == WizardSession()
        assert WizardSession.from_dict({}) == WizardSession()
