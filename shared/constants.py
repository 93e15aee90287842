MODEL_GPT_35_TURBO = "gpt-3.5-turbo"
MODEL_CREATED = 1626777600

CHAT_COMPLETIONS_PATH = "/v1/chat/completions"
MODELS_PATH = "/v1/models"

SSE_DONE = "data: [DONE]\n\n"
FINISH_REASON_STOP = "stop"
