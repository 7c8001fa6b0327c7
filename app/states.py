from aiogram.fsm.state import State, StatesGroup


class PromoCodeStates(StatesGroup):
    waiting_for_code = State()
