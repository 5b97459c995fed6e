import logging

from aiogram import F, Router, html, types
from aiogram.exceptions import TelegramBadRequest
from aiogram.filters import Command, StateFilter
from aiogram.fsm.context import FSMContext
from aiogram.utils.keyboard import InlineKeyboardBuilder

from bot import config, download_bytes, edit_client, react
from controller import Outcome, WizardController
from image_utils import (
    load_source_image,
    parse_point,
    render_coordinate_grid,
    render_point_preview,
)
import metrics
from session_store import FSMSessionStore
from states import EditAnythingStates
from wizard import FailureReason, WizardSession, WorkflowStep

logger = logging.getLogger(__name__)
router = Router()

LOADING_TEXT = "Hold on tight, we're working on it!"
NO_MASKS_TEXT = "No masks generated yet"
NO_RESULTS_TEXT = "Nothing to see just yet"
MAX_MEDIA_GROUP = 10

FAILURE_MESSAGES = {
    FailureReason.PRECONDITION: "That can't be done at this step.",
    FailureReason.LOADING: "Still working on the previous request, please wait. If it seems stuck, send /reset.",
    FailureReason.INVALID_POINT: "That point is outside the image.",
    FailureReason.UNKNOWN_MASK: "That mask is not in the current set.",
    FailureReason.EMPTY_PROMPT: "The prompt is empty.",
    FailureReason.MALFORMED_MASK_ID: "Could not find the mask id in the selected mask.",
    FailureReason.TRANSPORT: "Could not reach the edit service.",
    FailureReason.HTTP_STATUS: "The edit service returned an error.",
    FailureReason.MALFORMED_RESPONSE: "The edit service sent an unexpected answer.",
    FailureReason.STALE: "The session was reset while the request was running, result discarded.",
}

STEP_HINTS = {
    WorkflowStep.CHOOSE_IMAGE: "Send me an image, as a photo or as a file.",
    WorkflowStep.SET_MASK_POINT: (
        "Send the mask reference point as <code>x y</code> in pixels, "
        "e.g. <code>120 45</code>, or in percent, e.g. <code>40% 25%</code>."
    ),
    WorkflowStep.GENERATE_MASK: "Press <b>Generate masks</b>.",
    WorkflowStep.CHOOSE_MASK: "Pick one of the masks with the buttons.",
    WorkflowStep.DEFINE_PROMPT: "Describe the edit, something creative, like <i>a bus on the moon</i>.",
    WorkflowStep.GENERATE: "All done. Send /reset to edit another image.",
}


def controller_for(state: FSMContext) -> WizardController:
    return WizardController(client=edit_client, store=FSMSessionStore(state))


def render_steps(current: WorkflowStep) -> str:
    steps = list(WorkflowStep)
    current_index = steps.index(current)
    lines = []
    for i, step in enumerate(steps):
        if i < current_index:
            lines.append(f"✅ {step.title}")
        elif i == current_index:
            lines.append(f"👉 <b>{step.title}</b>")
        else:
            lines.append(f"▫️ {step.title}")
    return "\n".join(lines)


def describe_failure(outcome: Outcome) -> str:
    text = FAILURE_MESSAGES.get(outcome.reason, "Something went wrong.")
    if outcome.detail:
        text += f"\n<i>{html.quote(outcome.detail)}</i>"
    return text


def describe_session(session: WizardSession) -> str:
    lines = [render_steps(session.step), ""]
    if session.image is not None:
        lines.append(
            f"image: {html.code(session.image.filename)} "
            f"{session.image.width}x{session.image.height}"
        )
    if session.point is not None:
        lines.append(f"mask point: ({session.point.x}, {session.point.y})")
    lines.append(f"masks: {len(session.masks) or NO_MASKS_TEXT}")
    if session.selected_mask is not None:
        lines.append(f"selected mask: {session.masks.index(session.selected_mask) + 1}")
    if session.prompt:
        lines.append(f"prompt: {html.quote(session.prompt)}")
    lines.append(f"results: {len(session.results) or NO_RESULTS_TEXT}")
    lines.append(f"loading: {'YES' if session.loading else 'NO'}")
    if session.error is not None:
        lines.append(f"last error: {html.quote(session.error.detail)}")
    return "\n".join(lines)


def keyboard(*buttons: tuple[str, str]) -> types.InlineKeyboardMarkup:
    builder = InlineKeyboardBuilder()
    for text, data in buttons:
        builder.button(text=text, callback_data=data)
    builder.adjust(2)
    return builder.as_markup()


def reset_keyboard() -> types.InlineKeyboardMarkup:
    return keyboard(("Reset", "ea:reset"))


def mask_keyboard(session: WizardSession) -> types.InlineKeyboardMarkup:
    builder = InlineKeyboardBuilder()
    for index, mask in enumerate(session.masks):
        label = f"Mask {index + 1}"
        if mask == session.selected_mask:
            label = f"✓ {label}"
        builder.button(text=label, callback_data=f"ea:mask:{index}")
    builder.button(text="Reset", callback_data="ea:reset")
    builder.adjust(3)
    return builder.as_markup()


async def send_gallery(message: types.Message, urls: tuple[str, ...], label: str) -> None:
    """Send image URLs as media groups, falling back to plain links."""
    for start in range(0, len(urls), MAX_MEDIA_GROUP):
        chunk = urls[start:start + MAX_MEDIA_GROUP]
        media = [
            types.InputMediaPhoto(media=url, caption=f"{label} {start + i + 1}")
            for i, url in enumerate(chunk)
        ]
        try:
            if len(media) == 1:
                await message.answer_photo(chunk[0], caption=media[0].caption)
            else:
                await message.answer_media_group(media=media)
        except TelegramBadRequest as e:
            logger.warning("Could not send %s gallery as photos: %s", label, e)
            links = [
                f'<a href="{html.quote(url)}">{label} {start + i + 1}</a>'
                for i, url in enumerate(chunk)
            ]
            await message.answer("\n".join(links))


@router.message(
    config.filter_chat_allowed,
    config.filter_command_not_disabled_for_chat,
    Command(commands=["start", "edit"]),
)
async def handle_start(message: types.Message, state: FSMContext) -> None:
    logger.info("Command /start: chat_id=%s, user=%s", message.chat.id, message.from_user.username)
    outcome = await controller_for(state).reset()
    await message.answer(
        f"{render_steps(outcome.session.step)}\n\n{STEP_HINTS[outcome.session.step]}"
    )


@router.message(
    config.filter_chat_allowed,
    config.filter_command_not_disabled_for_chat,
    Command(commands=["reset"]),
)
async def handle_reset_command(message: types.Message, state: FSMContext) -> None:
    logger.info("Command /reset: chat_id=%s, user=%s", message.chat.id, message.from_user.username)
    outcome = await controller_for(state).reset()
    await message.answer(f"Session reset.\n\n{STEP_HINTS[outcome.session.step]}")
    await react(success=True, message=message)


@router.message(
    config.filter_chat_allowed,
    config.filter_command_not_disabled_for_chat,
    Command(commands=["status"]),
)
async def handle_status(message: types.Message, state: FSMContext) -> None:
    logger.info("Command /status: chat_id=%s, user=%s", message.chat.id, message.from_user.username)
    session = await controller_for(state).snapshot()
    await message.reply(describe_session(session))


@router.message(
    StateFilter(None, EditAnythingStates.choose_image),
    config.filter_chat_allowed,
    F.photo | F.document,
)
async def handle_image(message: types.Message, state: FSMContext) -> None:
    logger.info("Image received: chat_id=%s, user=%s", message.chat.id, message.from_user.username)

    if message.photo:
        photo = message.photo[-1]
        file_id, filename, file_size = photo.file_id, "photo.jpg", photo.file_size
    else:
        document = message.document
        if not (document.mime_type or "").startswith("image/"):
            await message.reply("That file is not an image. Send a photo or an image file.")
            await react(success=False, message=message)
            return
        file_id, filename, file_size = document.file_id, document.file_name, document.file_size

    if file_size and file_size > config.max_image_bytes:
        await message.reply(
            f"Image is too large ({file_size // 1024} KiB). "
            f"Limit is {config.max_image_bytes // 1024} KiB."
        )
        metrics.errors_total.labels(error_type="image_too_large").inc()
        await react(success=False, message=message)
        return

    await message.chat.do("upload_photo")
    image_bytes = await download_bytes(file_id)
    try:
        image = load_source_image(
            image_bytes,
            filename,
            max_bytes=config.max_image_bytes,
            max_pixels=config.max_image_pixels,
        )
    except ValueError as e:
        logger.warning("Rejected image from chat_id=%s: %s", message.chat.id, e)
        metrics.errors_total.labels(error_type="invalid_image").inc()
        await message.reply(html.quote(str(e)))
        await react(success=False, message=message)
        return

    outcome = await controller_for(state).supply_image(image)
    if not outcome.success:
        await message.reply(describe_failure(outcome))
        await react(success=False, message=message)
        return

    grid = types.BufferedInputFile(render_coordinate_grid(image), "grid.png")
    await message.answer_photo(
        grid,
        caption=(
            f"{render_steps(outcome.session.step)}\n\n"
            f"<b>Hint:</b> {STEP_HINTS[outcome.session.step]}\n"
            f"Image size is {image.width}x{image.height}."
        ),
        reply_markup=reset_keyboard(),
    )
    await react(success=True, message=message)


@router.message(
    EditAnythingStates.set_mask_point,
    config.filter_chat_allowed,
    F.text,
)
async def handle_point(message: types.Message, state: FSMContext) -> None:
    logger.info("Mask point received: chat_id=%s, text=%r", message.chat.id, message.text)
    controller = controller_for(state)
    session = await controller.snapshot()
    if session.image is None:
        await message.reply(STEP_HINTS[WorkflowStep.CHOOSE_IMAGE])
        return

    try:
        point = parse_point(message.text, session.image)
    except ValueError as e:
        await message.reply(html.quote(str(e)))
        await react(success=False, message=message)
        return

    outcome = await controller.click_point(point)
    if not outcome.success:
        await message.reply(describe_failure(outcome))
        await react(success=False, message=message)
        return

    preview = types.BufferedInputFile(render_point_preview(session.image, point), "point.png")
    await message.answer_photo(
        preview,
        caption=(
            f"{render_steps(outcome.session.step)}\n\n"
            f"Mask point set at ({point.x}, {point.y}). {NO_MASKS_TEXT}."
        ),
        reply_markup=keyboard(("Generate masks", "ea:masks"), ("Reset", "ea:reset")),
    )
    await react(success=True, message=message)


@router.callback_query(config.filter_chat_allowed, F.data == "ea:masks")
async def handle_generate_masks(callback: types.CallbackQuery, state: FSMContext) -> None:
    logger.info("Generate masks: chat_id=%s, user=%s", callback.message.chat.id, callback.from_user.username)
    controller = controller_for(state)
    session = await controller.snapshot()
    if not session.can_generate_masks:
        reason = FailureReason.LOADING if session.loading else FailureReason.PRECONDITION
        await callback.answer(FAILURE_MESSAGES[reason], show_alert=True)
        return

    await callback.answer()
    progress = await callback.message.answer(LOADING_TEXT)
    await callback.message.chat.do("upload_photo")
    try:
        outcome = await controller.generate_masks()
    finally:
        await progress.delete()

    if not outcome.success:
        markup = reset_keyboard()
        if outcome.session.can_generate_masks:
            markup = keyboard(("Generate masks", "ea:masks"), ("Reset", "ea:reset"))
        await callback.message.answer(describe_failure(outcome), reply_markup=markup)
        return

    if not outcome.session.masks:
        await callback.message.answer(
            f"The service found no masks for this point. {NO_MASKS_TEXT}.",
            reply_markup=reset_keyboard(),
        )
        return

    await send_gallery(callback.message, outcome.session.masks, "Mask")
    await callback.message.answer(
        f"{render_steps(outcome.session.step)}\n\n{STEP_HINTS[outcome.session.step]}",
        reply_markup=mask_keyboard(outcome.session),
    )


@router.callback_query(config.filter_chat_allowed, F.data.startswith("ea:mask:"))
async def handle_mask_selected(callback: types.CallbackQuery, state: FSMContext) -> None:
    _, _, raw_index = callback.data.split(":")
    index = int(raw_index)
    controller = controller_for(state)
    session = await controller.snapshot()
    if not 0 <= index < len(session.masks):
        await callback.answer("That mask is no longer available.", show_alert=True)
        return

    outcome = await controller.select_mask(session.masks[index])
    if not outcome.success:
        await callback.answer(FAILURE_MESSAGES[outcome.reason], show_alert=True)
        return

    logger.info("Mask %d selected: chat_id=%s", index + 1, callback.message.chat.id)
    await callback.answer(f"Mask {index + 1} selected")
    await callback.message.edit_reply_markup(reply_markup=mask_keyboard(outcome.session))

    await callback.message.answer(
        f"{render_steps(outcome.session.step)}\n\n{STEP_HINTS[outcome.session.step]}"
    )


@router.message(
    EditAnythingStates.define_prompt,
    config.filter_chat_allowed,
    F.text,
)
async def handle_prompt(message: types.Message, state: FSMContext) -> None:
    logger.info("Prompt received: chat_id=%s, length=%d", message.chat.id, len(message.text))
    outcome = await controller_for(state).set_prompt(message.text)
    if not outcome.success:
        await message.reply(describe_failure(outcome))
        await react(success=False, message=message)
        return

    if not outcome.session.has_prompt:
        await message.reply(FAILURE_MESSAGES[FailureReason.EMPTY_PROMPT])
        await react(success=False, message=message)
        return

    await message.reply(
        f"Prompt: <code>/imagine</code> {html.quote(outcome.session.prompt.strip())}\n"
        "Send another message to change it.",
        reply_markup=keyboard(("Generate", "ea:generate"), ("Reset", "ea:reset")),
    )


@router.callback_query(config.filter_chat_allowed, F.data == "ea:generate")
async def handle_generate(callback: types.CallbackQuery, state: FSMContext) -> None:
    logger.info("Generate: chat_id=%s, user=%s", callback.message.chat.id, callback.from_user.username)
    controller = controller_for(state)
    session = await controller.snapshot()
    if not session.can_generate:
        if session.loading:
            reason = FailureReason.LOADING
        elif session.step == WorkflowStep.DEFINE_PROMPT and not session.has_prompt:
            reason = FailureReason.EMPTY_PROMPT
        else:
            reason = FailureReason.PRECONDITION
        await callback.answer(FAILURE_MESSAGES[reason], show_alert=True)
        return

    await callback.answer()
    progress = await callback.message.answer(LOADING_TEXT)
    await callback.message.chat.do("upload_photo")
    try:
        outcome = await controller.generate()
    finally:
        await progress.delete()

    if not outcome.success:
        markup = reset_keyboard()
        if outcome.session.can_generate:
            markup = keyboard(("Generate", "ea:generate"), ("Reset", "ea:reset"))
        await callback.message.answer(describe_failure(outcome), reply_markup=markup)
        return

    if not outcome.session.results:
        await callback.message.answer(NO_RESULTS_TEXT, reply_markup=reset_keyboard())
        return

    await send_gallery(callback.message, outcome.session.results, "Result")
    await callback.message.answer(
        f"{render_steps(outcome.session.step)}\n\n{STEP_HINTS[outcome.session.step]}",
        reply_markup=reset_keyboard(),
    )


@router.callback_query(config.filter_chat_allowed, F.data == "ea:reset")
async def handle_reset_button(callback: types.CallbackQuery, state: FSMContext) -> None:
    logger.info("Reset button: chat_id=%s, user=%s", callback.message.chat.id, callback.from_user.username)
    outcome = await controller_for(state).reset()
    await callback.answer("Session reset")
    await callback.message.answer(
        f"{render_steps(outcome.session.step)}\n\n{STEP_HINTS[outcome.session.step]}"
    )


@router.message(StateFilter(EditAnythingStates), config.filter_chat_allowed)
async def handle_out_of_step(message: types.Message, state: FSMContext) -> None:
    session = await controller_for(state).snapshot()
    logger.debug("Out-of-step message in chat_id=%s at step=%s", message.chat.id, session.step.value)
    hint = FAILURE_MESSAGES[FailureReason.LOADING] if session.loading else STEP_HINTS[session.step]
    await message.reply(hint)
