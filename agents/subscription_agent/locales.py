from dataclasses import dataclass, field
from typing import Dict, List, Tuple


DEFAULT_LOCALE = "en"

# Pattern names understood by dates.DateCandidateResolver, in priority order.
PATTERNS_MONTH_FIRST = ("iso", "numeric", "month_day", "day_month")
PATTERNS_DAY_FIRST = ("iso", "numeric", "day_month", "month_day")
PATTERNS_CJK = ("iso", "cjk", "numeric")
PATTERNS_KOREAN = ("iso", "korean", "numeric")
PATTERNS_VIETNAMESE = ("iso", "vietnamese", "numeric", "day_month")


@dataclass(frozen=True)
class LocaleTable:
    """Per-language labels and phrases used to read the membership page.

    Control label sets (``pause``, ``resume``...) are matched word-bounded
    against button/link text. Phrase sets (``expired``, ``scheduled``...)
    are matched as case-insensitive substrings of the page text.
    """

    code: str
    name: str
    manage: Tuple[str, ...]
    pause: Tuple[str, ...]
    pause_confirm: Tuple[str, ...]
    resume: Tuple[str, ...]
    resume_confirm: Tuple[str, ...]
    confirm: Tuple[str, ...]
    cancel: Tuple[str, ...]
    renew: Tuple[str, ...]
    expired: Tuple[str, ...]
    scheduled: Tuple[str, ...]
    pause_phrases: Tuple[str, ...]
    resume_phrases: Tuple[str, ...]
    confirmation_phrases: Tuple[str, ...]
    plan_markers: Tuple[str, ...]
    error_markers: Tuple[str, ...]
    months: Dict[str, int] = field(default_factory=dict)
    date_patterns: Tuple[str, ...] = PATTERNS_DAY_FIRST
    numeric_order: str = "dmy"
    # Languages where the verb usually follows the date ("...일에 재개됩니다").
    verb_after_date: bool = False
    # Controls that call off a pause which has been scheduled but not started.
    cancel_pause: Tuple[str, ...] = ()

    def action_labels(self, action: str) -> Tuple[str, ...]:
        return self.pause if action == "pause" else self.resume

    def confirm_labels(self, action: str) -> Tuple[str, ...]:
        specific = self.pause_confirm if action == "pause" else self.resume_confirm + self.cancel_pause
        return specific + self.confirm


def _months(*groups: Tuple[str, ...]) -> Dict[str, int]:
    table: Dict[str, int] = {}
    for names in groups:
        for index, name in enumerate(names):
            if name:
                table[name] = index + 1
    return table


_EN_MONTHS = _months(
    ("january", "february", "march", "april", "may", "june", "july", "august",
     "september", "october", "november", "december"),
    ("jan", "feb", "mar", "apr", "", "jun", "jul", "aug", "sep", "oct", "nov", "dec"),
    ("", "", "", "", "", "", "", "", "sept", "", "", ""),
)

_PT_MONTHS = _months(
    ("janeiro", "fevereiro", "março", "abril", "maio", "junho", "julho", "agosto",
     "setembro", "outubro", "novembro", "dezembro"),
    ("jan", "fev", "mar", "abr", "mai", "jun", "jul", "ago", "set", "out", "nov", "dez"),
)

_ES_MONTHS = _months(
    ("enero", "febrero", "marzo", "abril", "mayo", "junio", "julio", "agosto",
     "septiembre", "octubre", "noviembre", "diciembre"),
    ("ene", "feb", "mar", "abr", "may", "jun", "jul", "ago", "sept", "oct", "nov", "dic"),
    ("", "", "", "", "", "", "", "", "sep", "", "", ""),
)

_FR_MONTHS = _months(
    ("janvier", "février", "mars", "avril", "mai", "juin", "juillet", "août",
     "septembre", "octobre", "novembre", "décembre"),
    ("janv", "févr", "", "avr", "", "", "juil", "", "sept", "oct", "nov", "déc"),
)

_DE_MONTHS = _months(
    ("januar", "februar", "märz", "april", "mai", "juni", "juli", "august",
     "september", "oktober", "november", "dezember"),
    ("jan", "feb", "mär", "apr", "", "jun", "jul", "aug", "sep", "okt", "nov", "dez"),
)

_RU_MONTHS = _months(
    ("январь", "февраль", "март", "апрель", "май", "июнь", "июль", "август",
     "сентябрь", "октябрь", "ноябрь", "декабрь"),
    ("января", "февраля", "марта", "апреля", "мая", "июня", "июля", "августа",
     "сентября", "октября", "ноября", "декабря"),
    ("янв", "фев", "мар", "апр", "", "июн", "июл", "авг", "сен", "окт", "ноя", "дек"),
    ("", "февр", "", "", "", "", "", "", "сент", "", "нояб", ""),
)

_TR_MONTHS = _months(
    ("ocak", "şubat", "mart", "nisan", "mayıs", "haziran", "temmuz", "ağustos",
     "eylül", "ekim", "kasım", "aralık"),
    ("oca", "şub", "mar", "nis", "may", "haz", "tem", "ağu", "eyl", "eki", "kas", "ara"),
)

_ID_MONTHS = _months(
    ("januari", "februari", "maret", "april", "mei", "juni", "juli", "agustus",
     "september", "oktober", "november", "desember"),
    ("jan", "feb", "mar", "apr", "", "jun", "jul", "agu", "sep", "okt", "nov", "des"),
    ("", "", "", "", "", "", "", "agt", "", "", "", ""),
)


LOCALES: Dict[str, LocaleTable] = {
    "en": LocaleTable(
        code="en",
        name="English",
        manage=("Manage membership", "Manage subscription", "Manage"),
        pause=("Pause membership", "Pause subscription", "Pause"),
        pause_confirm=("Pause membership", "Pause"),
        resume=("Resume membership", "Resume subscription", "Resume"),
        resume_confirm=("Resume membership", "Resume"),
        confirm=("Confirm", "Yes", "OK", "Continue"),
        cancel=("Cancel", "No", "Close", "Not now", "Go back"),
        renew=("Renew", "Renew membership"),
        expired=(
            "Benefits end:",
            "Benefits end",
            "Benefits ended",
            "Membership expired",
            "To avoid losing benefits",
            "To keep your benefits",
            "renew your membership",
        ),
        scheduled=(
            "Membership pauses on",
            "Membership will be paused on",
            "Membership resumes on",
            "Membership will resume on",
        ),
        pause_phrases=("pauses on", "will pause on", "will be paused on", "pause date", "next billing date", "next billing"),
        resume_phrases=("resumes on", "resume on", "resume date", "paused until"),
        confirmation_phrases=(
            "Pause membership",
            "Pause your membership",
            "Resume membership",
            "Resume your membership",
            "Are you sure",
            "You can resume",
        ),
        plan_markers=("/month", "per month", "Family membership", "Individual membership", "Student membership", "Next billing date"),
        error_markers=("Something went wrong", "Error", "Failed"),
        cancel_pause=("Cancel pause", "Cancel scheduled pause", "Don't pause"),
        months=_EN_MONTHS,
        date_patterns=PATTERNS_MONTH_FIRST,
        numeric_order="mdy",
    ),
    "ko": LocaleTable(
        code="ko",
        name="한국어",
        manage=("멤버십 관리", "구독 관리", "관리"),
        pause=("멤버십 일시중지", "구독 일시중지", "일시중지", "일시 중지"),
        pause_confirm=("멤버십 일시중지", "일시중지"),
        resume=("멤버십 재개", "구독 재개", "재개", "다시 시작"),
        resume_confirm=("멤버십 재개", "재개"),
        confirm=("확인", "예", "계속"),
        cancel=("취소", "아니오", "닫기"),
        renew=("갱신", "멤버십 갱신"),
        expired=("혜택 종료:", "혜택 종료", "혜택이 종료됩니다", "혜택을 계속 누리려면", "멤버십을 갱신하세요", "만료됨"),
        scheduled=("멤버십 일시중지 날짜", "일시중지 예정", "멤버십 재개 날짜", "재개 예정"),
        pause_phrases=("일시중지 날짜", "일시중지 예정", "일시중지일", "다음 결제일", "결제일"),
        resume_phrases=("재개 날짜", "재개 예정", "재개일"),
        confirmation_phrases=("멤버십 일시중지", "멤버십을 일시중지", "멤버십 재개", "멤버십을 재개"),
        plan_markers=("/월", "가족 멤버십", "개인 멤버십", "다음 결제일"),
        error_markers=("오류", "실패"),
        cancel_pause=("일시중지 취소", "일시중지 예약 취소"),
        date_patterns=PATTERNS_KOREAN,
        verb_after_date=True,
    ),
    "pt": LocaleTable(
        code="pt",
        name="Português",
        manage=("Gerenciar assinatura", "Gerir subscrição", "Gerir assinatura", "Gerenciar", "Gerir"),
        pause=("Pausar assinatura", "Pausar subscrição", "Pausar", "Suspender"),
        pause_confirm=("Pausar assinatura", "Pausar subscrição", "Pausar"),
        resume=("Retomar assinatura", "Retomar subscrição", "Retomar", "Reativar"),
        resume_confirm=("Retomar assinatura", "Retomar subscrição", "Retomar"),
        confirm=("Confirmar", "Sim", "OK", "Continuar"),
        cancel=("Cancelar", "Não", "Fechar", "Agora não"),
        renew=("Renovar", "Renovar assinatura"),
        expired=("Os benefícios terminam", "Os benefícios terminaram", "Renove sua assinatura", "Expirada"),
        scheduled=(
            "Assinatura pausada em",
            "vai ser colocada em pausa",
            "será pausada",
            "Assinatura retomada em",
            "vai ser retomada",
            "será retomada",
        ),
        pause_phrases=("pausada em", "colocada em pausa", "será pausada", "próxima data de cobrança", "faturação"),
        resume_phrases=("retomada em", "vai ser retomada", "será retomada"),
        confirmation_phrases=("Pausar assinatura", "Pausar subscrição", "Retomar assinatura", "Retomar subscrição", "Tem certeza"),
        plan_markers=("/mês", "por mês", "Assinatura familiar", "Subscrição familiar", "Faturado com"),
        error_markers=("Erro", "Falha"),
        cancel_pause=("Cancelar pausa", "Cancelar a pausa"),
        months=_PT_MONTHS,
    ),
    "es": LocaleTable(
        code="es",
        name="Español",
        manage=("Administrar membresía", "Gestionar suscripción", "Administrar", "Gestionar"),
        pause=("Pausar membresía", "Pausar", "Suspender"),
        pause_confirm=("Pausar membresía", "Pausar"),
        resume=("Reanudar membresía", "Reanudar", "Restaurar"),
        resume_confirm=("Reanudar membresía", "Reanudar"),
        confirm=("Confirmar", "Sí", "Aceptar"),
        cancel=("Cancelar", "No", "Cerrar", "Ahora no"),
        renew=("Renovar", "Renovar membresía"),
        expired=("Los beneficios finalizan", "Los beneficios finalizaron", "Renueva tu suscripción", "Vencida"),
        scheduled=("La membresía se pausa el", "se pausará el", "pausará el", "La membresía se reanuda el", "se reanudará el", "reanudará el"),
        pause_phrases=("se pausa el", "pausará el", "próxima fecha de facturación", "facturación"),
        resume_phrases=("se reanuda el", "reanudará el"),
        confirmation_phrases=("Pausar membresía", "Reanudar membresía", "¿Seguro", "Estás seguro"),
        plan_markers=("/mes", "al mes", "por mes", "Membresía familiar", "Membresía individual"),
        error_markers=("Error", "Fallo"),
        cancel_pause=("Cancelar pausa", "Cancelar la pausa"),
        months=_ES_MONTHS,
    ),
    "fr": LocaleTable(
        code="fr",
        name="Français",
        manage=("Gérer la souscription", "Gérer l'abonnement", "Gérer"),
        pause=("Suspendre l'abonnement", "Suspendre la souscription", "Suspendre", "Mettre en pause"),
        pause_confirm=("Suspendre l'abonnement", "Suspendre la souscription", "Suspendre"),
        resume=("Reprendre l'abonnement", "Reprendre la souscription", "Reprendre", "Réactiver"),
        resume_confirm=("Reprendre l'abonnement", "Reprendre la souscription", "Reprendre"),
        confirm=("Confirmer", "Oui", "OK", "Valider"),
        cancel=("Annuler", "Non", "Fermer", "Pas maintenant"),
        renew=("Renouveler", "Renouveler l'abonnement"),
        expired=("Avantages se terminent", "Les avantages prennent fin", "Renouveler votre abonnement", "Expiré"),
        scheduled=("L'abonnement est suspendu le", "sera suspendu le", "L'abonnement reprend le", "reprendra le"),
        pause_phrases=("suspendu le", "sera suspendu le", "prochaine date de facturation", "facturation"),
        resume_phrases=("reprend le", "reprendra le"),
        confirmation_phrases=("Suspendre l'abonnement", "Suspendre la souscription", "Reprendre l'abonnement", "Êtes-vous sûr"),
        plan_markers=("/mois", "par mois", "Abonnement famille", "Abonnement individuel"),
        error_markers=("Erreur", "Échec"),
        cancel_pause=("Annuler la suspension", "Annuler la pause"),
        months=_FR_MONTHS,
    ),
    "de": LocaleTable(
        code="de",
        name="Deutsch",
        manage=("Mitgliedschaft verwalten", "Abo verwalten", "Verwalten"),
        pause=("Mitgliedschaft pausieren", "Pausieren", "Unterbrechen"),
        pause_confirm=("Mitgliedschaft pausieren", "Pausieren"),
        resume=("Mitgliedschaft fortsetzen", "Fortsetzen", "Wieder aufnehmen"),
        resume_confirm=("Mitgliedschaft fortsetzen", "Fortsetzen"),
        confirm=("Bestätigen", "Ja", "OK"),
        cancel=("Abbrechen", "Nein", "Schließen"),
        renew=("Verlängern", "Mitgliedschaft verlängern"),
        expired=("Vorteile enden", "Vorteile endeten", "Mitgliedschaft verlängern", "Abgelaufen"),
        scheduled=("Mitgliedschaft pausiert am", "wird pausiert am", "Mitgliedschaft wird fortgesetzt am", "wird fortgesetzt am"),
        pause_phrases=("pausiert am", "wird pausiert am", "nächstes abrechnungsdatum", "abrechnung"),
        resume_phrases=("fortgesetzt am",),
        confirmation_phrases=("Mitgliedschaft pausieren", "Mitgliedschaft fortsetzen", "Bist du sicher", "Sind Sie sicher"),
        plan_markers=("/Monat", "pro Monat", "Familienmitgliedschaft", "Einzelmitgliedschaft"),
        error_markers=("Fehler", "Fehlgeschlagen"),
        cancel_pause=("Pausierung abbrechen", "Pause abbrechen"),
        months=_DE_MONTHS,
    ),
    "ru": LocaleTable(
        code="ru",
        name="Русский",
        manage=("Продлить или изменить", "Управлять подпиской", "Управление"),
        pause=("Приостановить подписку", "Приостановить", "Пауза"),
        pause_confirm=("Приостановить подписку", "Приостановить"),
        resume=("Возобновить подписку", "Возобновить", "Восстановить"),
        resume_confirm=("Возобновить подписку", "Возобновить"),
        confirm=("Подтвердить", "Да", "ОК", "OK"),
        cancel=("Отмена", "Нет", "Закрыть"),
        renew=("Продлить", "Продлить подписку"),
        expired=("Преимущества заканчиваются", "Срок действия подписки истек", "Продлить подписку"),
        scheduled=("Подписка приостановлена до", "будет приостановлена", "Подписка возобновится", "будет возобновлена"),
        pause_phrases=("будет приостановлена", "приостановлена с", "следующая дата оплаты", "дата оплаты"),
        resume_phrases=("приостановлена до", "возобновится", "будет возобновлена"),
        confirmation_phrases=("Приостановить подписку", "Возобновить подписку", "Вы уверены"),
        plan_markers=("/мес", "в месяц", "Семейная подписка", "Индивидуальная подписка"),
        error_markers=("Ошибка", "Неудача"),
        cancel_pause=("Отменить приостановку",),
        months=_RU_MONTHS,
    ),
    "ja": LocaleTable(
        code="ja",
        name="日本語",
        manage=("メンバーシップを管理", "サブスクリプション管理", "管理"),
        pause=("メンバーシップを一時停止", "一時停止"),
        pause_confirm=("メンバーシップを一時停止", "一時停止"),
        resume=("メンバーシップを再開", "再開する", "再開"),
        resume_confirm=("メンバーシップを再開", "再開"),
        confirm=("確認", "はい", "OK"),
        cancel=("キャンセル", "いいえ", "閉じる"),
        renew=("更新", "メンバーシップを更新"),
        expired=("特典終了", "メンバーシップを更新", "期限切れ"),
        scheduled=("メンバーシップ一時停止日", "一時停止されます", "メンバーシップ再開日", "再開されます"),
        pause_phrases=("一時停止日", "一時停止されます", "次回請求日"),
        resume_phrases=("再開日", "再開されます"),
        confirmation_phrases=("メンバーシップを一時停止", "メンバーシップを再開", "よろしいですか"),
        plan_markers=("/月", "月額", "ファミリー メンバーシップ", "個人メンバーシップ"),
        error_markers=("エラー", "失敗"),
        cancel_pause=("一時停止をキャンセル",),
        date_patterns=PATTERNS_CJK,
        verb_after_date=True,
    ),
    "zh-CN": LocaleTable(
        code="zh-CN",
        name="简体中文",
        manage=("管理会员", "管理订阅", "管理"),
        pause=("暂停会员", "暂停订阅", "暂停"),
        pause_confirm=("暂停会员", "暂停"),
        resume=("恢复会员", "恢复", "重新开始"),
        resume_confirm=("恢复会员", "恢复"),
        confirm=("确认", "是", "确定"),
        cancel=("取消", "否", "关闭"),
        renew=("续订", "续订会员资格"),
        expired=("福利结束", "续订会员资格", "已过期"),
        scheduled=("会员暂停日期", "将暂停", "会员恢复日期", "将恢复"),
        pause_phrases=("暂停日期", "将暂停", "下次付款日期"),
        resume_phrases=("恢复日期", "将恢复"),
        confirmation_phrases=("暂停会员", "恢复会员", "确定要"),
        plan_markers=("/月", "每月", "家庭会员", "个人会员"),
        error_markers=("错误", "失败"),
        cancel_pause=("取消暂停",),
        date_patterns=PATTERNS_CJK,
        verb_after_date=True,
    ),
    "tr": LocaleTable(
        code="tr",
        name="Türkçe",
        manage=("Üyeliği yönet", "Yönet"),
        pause=("Üyeliği duraklat", "Duraklat", "Ara ver"),
        pause_confirm=("Üyeliği duraklat",),
        resume=("Üyeliği devam ettir", "Devam et", "Devam", "Yeniden başlat"),
        resume_confirm=("Üyeliği devam ettir",),
        confirm=("Onayla", "Evet", "Tamam"),
        cancel=("İptal", "Hayır", "Kapat"),
        renew=("Yenile", "Üyeliği yenile"),
        expired=("Avantajlar sona eriyor", "Avantajlar sona erdi", "Süresi doldu"),
        scheduled=("Üyelik duraklatma tarihi", "duraklatılacak", "Üyelik devam tarihi", "devam edecek"),
        pause_phrases=("duraklatma tarihi", "duraklatılacak", "sonraki fatura tarihi"),
        resume_phrases=("devam tarihi", "devam edecek"),
        confirmation_phrases=("Üyeliği duraklat", "Üyeliği devam ettir", "Emin misiniz"),
        plan_markers=("/ay", "aylık", "Aile üyeliği", "Bireysel üyelik"),
        error_markers=("Hata", "Başarısız"),
        cancel_pause=("Duraklatmayı iptal et",),
        months=_TR_MONTHS,
    ),
    "vi": LocaleTable(
        code="vi",
        name="Tiếng Việt",
        manage=("Quản lý gói thành viên", "Quản lý đăng ký", "Quản lý"),
        pause=("Tạm dừng gói thành viên", "Tạm dừng", "Tạm ngưng"),
        pause_confirm=("Tạm dừng gói thành viên", "Tạm dừng"),
        resume=("Tiếp tục gói thành viên", "Tiếp tục", "Khôi phục"),
        resume_confirm=("Tiếp tục gói thành viên", "Tiếp tục"),
        confirm=("Xác nhận", "Có", "Đồng ý", "OK"),
        cancel=("Hủy", "Không", "Đóng"),
        renew=("Gia hạn",),
        expired=("Quyền lợi kết thúc", "Đã hết hạn"),
        scheduled=("Gói thành viên tạm dừng vào", "sẽ tạm dừng vào", "Gói thành viên tiếp tục vào", "sẽ tiếp tục vào"),
        pause_phrases=("tạm dừng vào", "ngày thanh toán tiếp theo"),
        resume_phrases=("tiếp tục vào",),
        confirmation_phrases=("Tạm dừng gói thành viên", "Tiếp tục gói thành viên", "Bạn có chắc"),
        plan_markers=("/tháng", "mỗi tháng", "Gói gia đình", "Gói cá nhân"),
        error_markers=("Lỗi", "Thất bại"),
        cancel_pause=("Hủy tạm dừng",),
        date_patterns=PATTERNS_VIETNAMESE,
    ),
    "id": LocaleTable(
        code="id",
        name="Bahasa Indonesia",
        manage=("Kelola langganan", "Kelola keanggotaan", "Kelola"),
        pause=("Jeda langganan", "Jeda", "Tangguhkan"),
        pause_confirm=("Jeda langganan", "Jeda"),
        resume=("Lanjutkan langganan", "Lanjutkan", "Aktifkan kembali"),
        resume_confirm=("Lanjutkan langganan", "Lanjutkan"),
        confirm=("Konfirmasi", "Ya", "OK"),
        cancel=("Batal", "Tidak", "Tutup"),
        renew=("Perpanjang",),
        expired=("Manfaat berakhir", "Kedaluwarsa"),
        scheduled=("Langganan dijeda pada", "akan dijeda pada", "Langganan dilanjutkan pada", "akan dilanjutkan pada"),
        pause_phrases=("dijeda pada", "tanggal penagihan berikutnya"),
        resume_phrases=("dilanjutkan pada",),
        confirmation_phrases=("Jeda langganan", "Lanjutkan langganan", "Anda yakin"),
        plan_markers=("/bulan", "per bulan", "Paket keluarga", "Paket individu"),
        error_markers=("Error", "Gagal"),
        cancel_pause=("Batalkan jeda",),
        months=_ID_MONTHS,
    ),
}


def get_locale(code: str) -> LocaleTable:
    """Return the table for a language tag, falling back to English.

    ``en-US`` resolves to ``en``; ``zh-TW`` resolves to ``zh-CN`` through
    its primary subtag.
    """
    raw = str(code or "").strip().replace("_", "-")
    if not raw:
        return LOCALES[DEFAULT_LOCALE]
    if raw in LOCALES:
        return LOCALES[raw]
    primary = raw.lower().split("-")[0]
    if primary in LOCALES:
        return LOCALES[primary]
    for key, table in LOCALES.items():
        if key.lower().split("-")[0] == primary:
            return table
    return LOCALES[DEFAULT_LOCALE]


def supported_locales() -> List[Dict[str, str]]:
    return [{"code": code, "name": table.name} for code, table in LOCALES.items()]
