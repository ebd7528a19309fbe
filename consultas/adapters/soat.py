from consultas.adapters.base import (
    ASPNET_ANTI_FORGERY_FIELDS,
    ChallengeHints,
    SearchField,
    SiteAdapter,
)
from consultas.models import SearchMode

URL_SOAT = "https://servicios.sbs.gob.pe/reportesoat/"

# La SBS normalmente no pide captcha; si aparece uno de imagen lo resolvemos.
SOAT = SiteAdapter(
    target_id="soat",
    name="SBS - Certificados SOAT",
    category="insurance",
    search_url=URL_SOAT,
    search_modes={
        SearchMode.PLATE: SearchField(
            input_selectors=(
                "#ctl00_MainBodyContent_txtPlaca",
                "input[name='ctl00$MainBodyContent$txtPlaca']",
                "input[placeholder='Placa']",
            ),
        ),
    },
    form_selectors=("#ctl00_MainBodyContent_txtPlaca", "input[name='ctl00$MainBodyContent$txtPlaca']"),
    submit_selectors=(
        "#ctl00_MainBodyContent_btnConsultar",
        "input[type='submit'][value='Consultar']",
        "button:has-text('Consultar')",
    ),
    challenge=ChallengeHints(
        kind="image",
        optional=True,
        image_selectors=("img[id*='Captcha' i]",),
        input_selectors=("input[id*='Captcha' i]",),
    ),
    result_selectors=("table", "#ctl00_MainBodyContent_lblMensaje"),
    table_selectors=("table[id*='gv' i]", "table"),
    # "La placa consultada no tiene información reportada sobre SOAT"
    no_data_markers=("no tiene informacion reportada sobre soat",),
    anti_forgery_fields=ASPNET_ANTI_FORGERY_FIELDS,
    field_map={
        "insurer": ("compania aseguradora", "compania", "aseguradora"),
        "policy_number": ("numero de poliza", "nro poliza", "poliza", "numero certificado"),
        "valid_from": ("inicio de vigencia", "inicio vigencia", "fecha inicio", "desde"),
        "valid_to": ("fin de vigencia", "fin vigencia", "fecha fin", "hasta"),
        "status": ("estado",),
    },
)
